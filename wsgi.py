# =================================================================
#   Attendance Notify - WSGI Entry Point
#   Used by production WSGI servers (Waitress, Gunicorn, etc.)
#
#   Usage:
#     Windows:  waitress-serve --host=0.0.0.0 --port=5000 wsgi:app
#     Linux:    gunicorn -w 1 -b 0.0.0.0:5000 wsgi:app
#
#   More than one worker process means one message rate-limit window
#   per process unless RATE_LIMIT_BACKEND=store.
# =================================================================

from server import create_app

app = create_app()

if __name__ == '__main__':
    app.run()
