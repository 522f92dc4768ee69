import os

import config
from pos_server import create_app
from pos_service import build_service
from pos_store import SqliteCatalog
from sync_worker import ResyncWorker


def start_resync_worker(service, settings):
    if not settings.resync_enabled or service.sync_client is None:
        return None
    if os.environ.get('FLASK_DEBUG', '0') == '1' and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        # the reloader parent process only watches files
        return None
    worker = ResyncWorker(service.recorder, service.sync_client, service.guard,
                          interval=settings.resync_interval)
    worker.start()
    return worker


if __name__ == '__main__':
    settings = config.Settings.from_env()
    config.configure_logging(settings.log_level)
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    service = build_service(settings)
    app = create_app(service, catalog_names=SqliteCatalog(service.recorder.conn).name_of)
    worker = start_resync_worker(service, settings)
    try:
        app.run(host=settings.host, port=settings.port, debug=debug)
    finally:
        service.shutdown()
        if worker:
            worker.stop(timeout=5)
