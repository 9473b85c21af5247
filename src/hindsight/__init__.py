"""
hindsight - persistent, vector-indexed long-term memory for agents.

Stores natural-language memory fragments with embeddings, retrieves the
most relevant ones for a new task under a token budget, and consolidates
the corpus (deduplication, decay, archival) so it stays useful at scale.
"""

__version__ = "0.1.0"

from hindsight.config import HindsightConfig, load_config
from hindsight.engine import MemoryEngine
from hindsight.errors import (
    ConfigurationError,
    ConsolidationError,
    EmbeddingError,
    FragmentValidationError,
    HindsightError,
    NamespaceError,
    StorageUnavailableError,
)
from hindsight.models import (
    ConsolidationReport,
    EpisodicDetails,
    ForkReport,
    Fragment,
    FragmentFilter,
    FragmentInput,
    HealthStatus,
    ImportReport,
    NamespaceMergeReport,
    ProceduralDetails,
    RetrievalQuery,
    RetrievalResult,
    ScoredFragment,
    SemanticDetails,
    StorageStats,
)
from hindsight.namespaces import make_namespace, parse_namespace

__all__ = [
    "__version__",
    # Engine
    "MemoryEngine",
    "HindsightConfig",
    "load_config",
    # Models
    "Fragment",
    "FragmentInput",
    "FragmentFilter",
    "EpisodicDetails",
    "SemanticDetails",
    "ProceduralDetails",
    "ScoredFragment",
    "RetrievalQuery",
    "RetrievalResult",
    "ConsolidationReport",
    "NamespaceMergeReport",
    "ForkReport",
    "ImportReport",
    "StorageStats",
    "HealthStatus",
    # Namespaces
    "make_namespace",
    "parse_namespace",
    # Errors
    "HindsightError",
    "ConfigurationError",
    "FragmentValidationError",
    "NamespaceError",
    "EmbeddingError",
    "StorageUnavailableError",
    "ConsolidationError",
]
