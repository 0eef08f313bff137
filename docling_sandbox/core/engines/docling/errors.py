"""
Failure taxonomy for the local Docling engine.

- InitializationError: backend selection or weight acquisition failed. Fatal for the
  session until the host explicitly requests the model again.
- InvalidInputError: missing or undecodable image. The user must resupply input.
- GenerationError: the decode step failed. The same request may be retried.
- GenerationCancelled: an in-flight run was superseded or aborted. Not a failure.
"""


class DoclingEngineError(Exception):
    """Base class for every error raised by the orchestration layer."""


class InitializationError(DoclingEngineError):
    pass


class InvalidInputError(DoclingEngineError):
    pass


class GenerationError(DoclingEngineError):
    pass


class GenerationCancelled(DoclingEngineError):
    pass
