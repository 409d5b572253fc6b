"""pkgbake - Build native packages from declarative recipes.

This package orchestrates recipe execution across isolated build
environments, one per target image, and hands the collected output
trees to a package writer.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
