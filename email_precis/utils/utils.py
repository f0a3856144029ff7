import importlib.metadata
import importlib.resources

from pathlib import Path


def get_package_root(package_name: str) -> Path:
    """Get the root directory of a given package."""
    root = importlib.resources.files(package_name)
    assert isinstance(root, Path), f"Expected Path, got {type(root)}"
    return root


def get_version(distribution: str = "email-precis") -> str:
    try:
        return importlib.metadata.version(distribution)
    except importlib.metadata.PackageNotFoundError:
        return "0.0.0"
