"""Issue lifecycle orchestrator: drives tracker issues through a staged pipeline."""

__version__ = "0.3.0"
