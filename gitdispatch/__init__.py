"""Poll git repositories and dispatch Kubernetes jobs for new commits."""

__version__ = "1.0.0"
