"""
WSGI entry point for the pipeline API and site previews.

    gunicorn wsgi:app          (web, see Procfile)
    python worker.py           (RQ worker for the 'rq' continuation backend)
    MOCK_PIPELINE=1 CONTINUATION_BACKEND=local python wsgi.py
                               (single-process demo with fake collaborators)
"""
from app import create_app

app = create_app()

if __name__ == '__main__':
    import os
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5000)))
