from infra.stack import GitScanningStack

__all__ = ["GitScanningStack"]
