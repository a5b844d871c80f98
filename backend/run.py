import atexit
import signal
import sys

from blockfall import create_app, socketio
from blockfall.engine import EXTENSION_KEY

app = create_app()


def shutdown():
    # Flush then stop timers; safe to call more than once
    app.extensions[EXTENSION_KEY].shutdown()


def _on_signal(signum, frame):
    app.logger.info(f"[shutdown] signal={signum}")
    sys.exit(0)


atexit.register(shutdown)
signal.signal(signal.SIGTERM, _on_signal)
signal.signal(signal.SIGINT, _on_signal)

if __name__ == '__main__':
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
