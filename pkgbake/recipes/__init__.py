"""Recipe model, schema and loading.

This module handles:
- Schema validation of recipe documents (YAML/JSON)
- Conversion into the immutable Recipe model
- Aggregated structural validation
"""

from pkgbake.recipes.models import Recipe, Stage, Step, Target

__all__ = ["Recipe", "Stage", "Step", "Target"]
