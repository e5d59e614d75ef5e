"""podtail: follow the logs of every Kubernetes container matching a query."""

__version__ = "0.1.0"
