"""Shared constants for the analysis orchestrator."""

# =============================================================================
# Batch Planning
# =============================================================================
DEFAULT_AVERAGE_ITEM_KB = 500
"""Assumed average page size (KB) when the caller does not measure it."""

MIN_ITEM_SIZE_KB = 100
"""Lower bound applied to the average item size in the size-budget formula."""

OVERLAP_FRACTION = 0.15
"""Fraction of a batch repeated in the next batch for continuity."""

THOROUGH_BATCH_FACTOR = 0.6
"""Batch shrink factor applied in thorough mode."""

MIN_BATCH_SIZE = 2
"""Smallest batch that still leaves room for one overlapping item."""

SECONDS_PER_BATCH = 30
"""Wall-clock estimate for one standard batch (user-facing only)."""

THOROUGH_SECONDS_PER_BATCH = {"deep": 60, "exhaustive": 90}
"""Wall-clock estimate for one thorough batch, per detail level."""

# =============================================================================
# Overlap / Continuity
# =============================================================================
CONTINUITY_WINDOW = 2
"""Entities last seen within this many batches are carried as hints."""

DEFAULT_ITEM_CONFIDENCE = 0.5
"""Confidence assigned to parsed items that do not report one."""

# =============================================================================
# Retry / Circuit Breaker / Fallback
# =============================================================================
DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000
DEFAULT_BACKOFF_MULTIPLIER = 2.0

JITTER_FRACTION = 0.25
"""Backoff jitter (+/-) applied multiplicatively."""

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RESET_TIMEOUT_MS = 30000

SUCCESS_RATE_GROWTH = 1.1
"""Multiplier applied to a provider's success rate after a success (capped at 1.0)."""

SUCCESS_RATE_DECAY = 0.9
"""Multiplier applied to a provider's success rate after a failure (floored at 0.0)."""

# =============================================================================
# Stages
# =============================================================================
DEFAULT_STAGE_TIMEOUT_S = 120.0
"""Default per-stage timeout before the timeout multiplier is applied."""

DEFAULT_REQUEST_TIMEOUT_S = 90.0
"""Default timeout for a single provider request."""

DEFAULT_DELAY_BETWEEN_BATCHES_MS = 1000

# =============================================================================
# Cost Estimation
# =============================================================================
TOKENS_PER_MILLION = 1_000_000

ESTIMATED_PROMPT_TOKENS_PER_PAGE = {"standard": 1000, "thorough": 2000}
ESTIMATED_COMPLETION_TOKENS_PER_PAGE = {"standard": 500, "thorough": 1500}

# =============================================================================
# Provider Requests
# =============================================================================
MAX_IMAGE_DIMENSION = 1024
"""Maximum dimension (width or height) for page images sent to model APIs."""

JPEG_QUALITY = 85

DEFAULT_MAX_TOKENS = 8192
"""Default max output tokens for one analysis request."""

DEFAULT_TEMPERATURE = 0.2
