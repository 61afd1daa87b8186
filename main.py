import os

import offline_config as cfg
from offline_agent import create_app, start_background, stop_background


if __name__ == '__main__':
    cfg.configure_logging('agent')
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5050'))
    host = os.getenv('HOST', '127.0.0.1')
    app = create_app()
    start_background(app)
    try:
        # one process only: the reloader would start a second sync worker
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        stop_background(app)
