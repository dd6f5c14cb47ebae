"""
Prompts for the LLM-backed genetic operators and the evaluation judge
"""

CROSSOVER_SYSTEM_PROMPT = "You are a prompt engineering expert combining prompts."
MUTATION_SYSTEM_PROMPT = "You are a prompt engineering expert applying mutations."
VARIANT_SYSTEM_PROMPT = "You are a prompt engineering expert creating diverse variants."
JUDGE_SYSTEM_PROMPT = "You are a strict evaluator. Return only valid JSON."

CROSSOVER_PROMPT = """You are an expert prompt engineer. Combine the best elements of these two prompts to create an offspring prompt that:

1. Takes the most effective phrases and structures from both parents
2. Maintains coherence and readability
3. Preserves every template variable written in double curly braces exactly as it appears
4. Creates something meaningfully different from either parent

PARENT 1:
{parent1}

PARENT 2:
{parent2}

Create the offspring prompt by combining the best elements. Return ONLY the new prompt, no explanations:"""

MUTATION_PROMPT = """You are an expert prompt engineer. Apply a small but meaningful mutation to this prompt:

1. Change the tone slightly (warmer, more direct, more encouraging)
2. Rephrase a key section
3. Adjust the structure
4. Add or remove emphasis

Keep every template variable written in double curly braces intact.

ORIGINAL PROMPT:
{prompt}

Apply a mutation and return ONLY the mutated prompt, no explanations:"""

VARIANT_PROMPT = """You are an expert prompt engineer. Create a variant of this prompt that maintains the core message but:

1. Uses different phrasing and structure
2. May change the emotional tone
3. Could reorder sections
4. Keeps every template variable written in double curly braces intact

ORIGINAL PROMPT:
{prompt}

Create a meaningfully different variant. Return ONLY the variant prompt, no explanations:"""

JUDGE_PROMPT = """{criteria}

Score the response on a scale of 1 to {scale}, where 1 is the worst and {scale} is the best.

USER INPUT:
{input}

AI RESPONSE TO EVALUATE:
{output}

Return JSON of the form {{"score": <integer 1-{scale}>, "reason": "<one sentence>"}}:"""

# Used as the generated output when no LLM is configured
PLACEHOLDER_OUTPUT = "[LLM unavailable: no output generated]"
