"""
Constants and configuration values for reader personalization.
"""

# Engagement Decay
DEFAULT_DECAY_DAYS = 21
MAX_TOPIC_PREFERENCES = 25
SECONDS_PER_DAY = 86400

# Per-content engagement weight (feature vector input)
ENGAGED_DURATION_SCALE = 240.0  # Seconds that map to weight 1.0
ENGAGED_DURATION_MIN = 0.1
ENGAGED_DURATION_MAX = 2.0
ENGAGED_TYPE_WEIGHTS = {"session": 1.5, "feedback": 1.2}
FEATURE_WEIGHT_MIN = 0.1
FEATURE_WEIGHT_MAX = 5.0

# Content scores
CONTENT_SESSION_SCALE = 600.0
CONTENT_SESSION_MIN = 0.1
CONTENT_SESSION_MAX = 1.5
CONTENT_EVENT_SCORES = {"view": 0.15, "share": 0.4, "feedback": 0.6}
CONTENT_ENGAGEMENT_NORMALIZER = 1.2
FRESHNESS_DECAY_DAYS = 14
FRESHNESS_UNKNOWN = 0.3

# Highlights
HIGHLIGHT_MIN_CHARS = 12
HIGHLIGHT_MAX_CHARS = 180
HIGHLIGHT_LIMIT = 5
SUMMARY_FALLBACK_CHARS = 600

# Segments (defaults; overridable through Settings)
SEGMENT_DEEP_READER = "Deep Reader"
SEGMENT_EXPLORER = "Explorer"
SEGMENT_CASUAL = "Casual"
SEGMENT_OPTED_OUT = "Opted Out"
SEGMENT_DEEP_READ_SECONDS = 420
SEGMENT_DEEP_SESSIONS = 8
SEGMENT_EXPLORER_SESSIONS = 3
SEGMENT_EXPLORER_TOPICS = 4
SEGMENT_FEEDBACK_COUNT = 2
SEGMENT_FEEDBACK_READ_SECONDS = 240

# Tone
TONES = ("informative", "conversational", "persuasive")
DEFAULT_TONE = "informative"

# Topic Clustering
CLUSTER_MIN_K = 2
CLUSTER_MAX_K = 8
CLUSTER_MAX_ITERS = 6
CLUSTER_SHIFT_TOLERANCE = 0.01
CLUSTER_KEYWORD_LIMIT = 8
CLUSTER_KEYWORD_MIN_LENGTH = 4
CLUSTER_TAG_WEIGHT = 1.0
CLUSTER_WORD_WEIGHT = 0.5
CLUSTER_DEFAULT_LABEL = "Topic"

# Affinity Weights
AFFINITY_TOPIC_WEIGHT = 0.45
AFFINITY_VECTOR_WEIGHT = 0.35
AFFINITY_ENGAGEMENT_WEIGHT = 0.10
AFFINITY_FRESHNESS_WEIGHT = 0.10
AFFINITY_REASON_TOPICS = 3
SEMANTIC_MATCH_THRESHOLD = 0.50  # Raw cosine for "Embedding similarity"
HIGH_ENGAGEMENT_THRESHOLD = 0.5
FRESH_CONTENT_THRESHOLD = 0.5
MIN_AFFINITY = 0.15
MAX_AFFINITIES = 60

# Feed
FEED_CACHE_VERSION = 3
FEED_CACHE_PREFIX = f"feed:v{FEED_CACHE_VERSION}"
DEFAULT_FEED_LIMIT = 8
FEED_LIMIT_MIN = 3
FEED_LIMIT_MAX = 20
DEFAULT_FALLBACK_LIMIT = 6
FALLBACK_LIMIT_MAX = 30
FEED_TTL_MIN_SECONDS = 600
FEED_TTL_MAX_SECONDS = 86400
TRENDING_SCORE = 0.25
TRENDING_REASON = "Trending"
TRENDING_ENGAGEMENT_WEIGHT = 0.6
TRENDING_FRESHNESS_WEIGHT = 0.4
FEED_CACHE_MAX_FILES = 5000

# ETL
DEFAULT_ANALYTICS_TTL_DAYS = 90
DEFAULT_ETL_WORKERS = 4
ETL_MAX_ERROR_RATE = 0.005
ETL_MAX_DURATION_SECONDS = 300  # 5 minutes

# Privacy export
EXPORT_AFFINITY_LIMIT = 25

# Creator Insights
INSIGHT_DEFAULT_LIMIT = 25
INSIGHT_WORDS_PER_MINUTE = 220
INSIGHT_LONG_POST_WORDS = 1800
INSIGHT_DRIVER_THRESHOLD = 0.6

# Similarity Bounds
SIMILARITY_MIN = -1.0
SIMILARITY_MAX = 1.0
