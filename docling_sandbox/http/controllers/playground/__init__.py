"""
Playground Controller Package
----------------------------
HTTP host for the local Docling engine:
- model: Backend info, model warm-up and load status.
- inference: Transcription task dispatch, cancellation and polling.
"""

from flask import Blueprint

# Create the Blueprint shared by all sub-modules
playground_bp = Blueprint('playground', __name__)

# Import sub-modules to register routes
# Using delayed imports to allow the blueprint object to be initialized first
from . import model
from . import inference
