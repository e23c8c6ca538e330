"""geoforge: reproducible offline geospatial stack builder.

Turns one regional OpenStreetMap extract into a routing graph, a spatial
database, and served tiles:
  - resumable, verified source downloads
  - idempotent external-tool stages, skipped when outputs are valid and fresh
  - fail-fast dependency-ordered execution with resume on re-run
  - readiness gates for long-starting services
  - timestamp-driven cache invalidation
"""

__version__ = "0.1.0"
__description__ = "Reproducible offline geospatial stack builder"

from geoforge.core.orchestrator import Orchestrator
from geoforge.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
