"""Project, credential and pipeline-run records consumed by the dispatcher."""
