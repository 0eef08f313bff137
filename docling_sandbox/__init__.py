from flask import Flask, jsonify
from docling_sandbox.config import Config

def create_app():
    """
    Application Factory for the Docling Sandbox.
    Initializes Flask environment and registers the Playground Blueprint.
    """
    app = Flask(__name__)

    # Load settings from the config module
    app.config.from_object(Config)

    # Register the Playground Blueprint Package
    from docling_sandbox.http.controllers.playground import playground_bp
    app.register_blueprint(playground_bp)

    # Root Route Management
    @app.route('/')
    def index():
        return jsonify({
            'service': 'docling-sandbox',
            'model_id': Config.LOCAL_MODEL_ID,
            'endpoints': sorted(str(rule) for rule in app.url_map.iter_rules() if rule.endpoint != 'static')
        })

    return app
