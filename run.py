import logging
from werkzeug.serving import WSGIRequestHandler
from docling_sandbox import create_app

app = create_app()

# High-frequency polling endpoints that would otherwise flood the console
QUIET_PATHS = ('GET /status/', 'GET /api/playground/model/status')

class FilteredRequestHandler(WSGIRequestHandler):
    """
    Custom Request Handler to suppress logs from the polling endpoints.
    """
    def log_request(self, code='-', size='-'):
        if any(path in self.requestline for path in QUIET_PATHS):
            return
        super().log_request(code, size)

def configure_logging():
    """
    Root logging setup for the engine modules (werkzeug keeps its own handler).
    """
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

if __name__ == '__main__':
    port = 5000
    configure_logging()

    print("\n" + "="*65)
    print(f"🚀 SERVER STARTING ON PORT {port}")
    print(f"📄 Model: {app.config['LOCAL_MODEL_ID']}")
    print("="*65 + "\n")

    app.run(
        debug=True,
        use_reloader=False,
        port=port,
        host="127.0.0.1",
        request_handler=FilteredRequestHandler
    )
