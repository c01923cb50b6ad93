"""
Main entry point for mediamirror.

Starts the Flask web server and the sync scheduler.
"""

import os
import atexit
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask

from mediamirror.config import APP_VERSION, ConfigurationError
from mediamirror.db.database import init_db, close_db
from mediamirror.sync.engine import create_sync_engine_from_config, load_config
from mediamirror.sync.status import RunInProgressError
from mediamirror.utils.logging import get_logger, init_db_logging

logger = get_logger(__name__)

# Global scheduler
scheduler = BackgroundScheduler()


def create_app() -> Flask:
    """
    Create and configure the Flask application.

    Returns:
        Configured Flask app
    """
    app = Flask(__name__)

    from mediamirror.web.routes.api import api_bp
    app.register_blueprint(api_bp)

    @app.route('/health')
    def health():
        return {'status': 'ok', 'timestamp': datetime.utcnow().isoformat()}

    return app


def run_sync():
    """Run a scheduled sync on the scheduler thread."""
    logger.info("Starting scheduled sync")

    engine = create_sync_engine_from_config()
    try:
        result = engine.sync()
        logger.info(
            "Scheduled sync finished",
            run_id=result.run_id,
            state=result.state,
            created=result.collections_created,
            updated=result.collections_updated,
            unmatched=result.items_unmatched
        )
    except RunInProgressError as e:
        logger.info("Skipping scheduled sync, run in progress", run_id=e.active_run_id)
    except ConfigurationError as e:
        logger.warning("Sync engine not configured, skipping sync", error=str(e))
    finally:
        engine.close()


def start_scheduler(interval_hours: int = 24):
    """
    Start the sync scheduler.

    Args:
        interval_hours: Sync interval in hours
    """
    scheduler.add_job(
        run_sync,
        trigger=IntervalTrigger(hours=interval_hours),
        id='sync_job',
        name='Collection Sync',
        replace_existing=True,
        max_instances=1,
    )

    scheduler.start()
    logger.info("Scheduler started", interval_hours=interval_hours)


def shutdown_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shutdown")


def main():
    """Main entry point."""
    init_db()

    # Database logging needs the tables created by init_db
    init_db_logging()

    config = load_config()

    logger.info(
        "Starting mediamirror",
        version=APP_VERSION,
        scheduled=config.enable_scheduled_sync,
        sync_interval_hours=config.sync_interval_hours
    )

    app = create_app()

    if config.enable_scheduled_sync:
        start_scheduler(config.sync_interval_hours)
        atexit.register(shutdown_scheduler)

    atexit.register(close_db)

    port = int(os.getenv("PORT", "5000"))

    from waitress import serve
    serve(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
