"""Controllers that delete, taint and route cluster nodes according to the cloud provider."""

__version__ = "0.1.0"
__all__ = ["types", "nodelifecycle", "route"]