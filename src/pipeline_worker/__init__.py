"""Job queue worker for GitHub-issue driven agent pipelines."""

__version__ = "0.1.0"
