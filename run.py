# run.py
from flashsale.config import Config
from flashsale.main import app, start_scheduler

if __name__ == "__main__":
    start_scheduler()
    # The reloader would fork a second process with its own scheduler thread
    app.run(
        debug=Config.DEBUG,
        host=Config.FLASK_RUN_HOST,
        port=Config.FLASK_RUN_PORT,
        use_reloader=False,
    )
