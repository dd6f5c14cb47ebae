# Configuration settings shared across the application

# LLM used for the genetic operators and output generation
DEFAULT_MODEL = "gemini-2.5-flash-lite"

# Token and timeout limits for evolution LLM calls
EVOLUTION_MAX_TOKENS = 1000
EVOLUTION_EVALUATION_TIMEOUT_MS = 60000
EVALUATION_OUTPUT_MAX_TOKENS = 500
JUDGE_MAX_TOKENS = 500

# Circuit breaker defaults
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_SUCCESS_THRESHOLD = 2
DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RESET_TIMEOUT_MS = 60000
DEFAULT_HALF_OPEN_MAX_CALLS = 1  # advisory only

OPERATION_TYPES = ("crossover", "mutation", "evaluation", "variant_generation")

# Population defaults
DEFAULT_POPULATION_SIZE = 10
DEFAULT_GENERATIONS = 5
DEFAULT_SURVIVAL_RATE = 0.3
DEFAULT_MUTATION_RATE = 0.2
DEFAULT_ELITISM_COUNT = 2
DEFAULT_EVALUATION_CONCURRENCY = 1

# Score used when an evaluation falls back
NEUTRAL_FITNESS_SCORE = 0.5

# Adaptive GA parameters
ADAPTIVE_MUTATION_RATE_MIN = 0.05
ADAPTIVE_MUTATION_RATE_MAX = 0.5
ADAPTIVE_SURVIVAL_RATE_MIN = 0.2
ADAPTIVE_SURVIVAL_RATE_MAX = 0.5
ADAPTIVE_STAGNATION_THRESHOLD = 3
ADAPTIVE_DIVERSITY_THRESHOLD = 0.3
ADAPTIVE_MUTATION_INCREASE_FACTOR = 1.5
ADAPTIVE_MUTATION_DECREASE_FACTOR = 0.9
ADAPTIVE_SURVIVAL_DECREASE_FACTOR = 0.85
ADAPTIVE_GOOD_IMPROVEMENT_THRESHOLD = 0.05

# Feedback names recorded per generation
FEEDBACK_GENERATION_FITNESS = "GenerationFitness"
FEEDBACK_ADAPTIVE_METRICS = "adaptive_metrics"

# Where the JSON experiment repository writes by default
DEFAULT_DATA_DIR = "data/experiments"
