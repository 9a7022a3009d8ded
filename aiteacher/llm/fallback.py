"""
Local response generation used when the generation service is unavailable.
"""

import re
from typing import List, Dict, Union

from aiteacher.memory.models import UnderstandingAnalysis

TOPIC_KEYWORDS = [
    "programming", "python", "javascript", "react", "node.js", "database",
    "api", "machine learning", "neural network", "deep learning", "backpropagation",
    "gradient descent", "algorithm", "data structure", "function", "class",
    "object", "variable", "web development", "frontend", "backend",
]

STOPWORDS = {
    "what", "when", "where", "which", "while", "with", "would", "could", "should",
    "about", "explain", "please", "there", "their", "these", "those", "this",
    "that", "have", "does", "from", "into", "your", "tell", "know", "help",
    "understand", "work", "works", "how", "why", "can", "you", "the", "and",
}

CONFUSION_MARKERS = [
    "confused", "don't understand", "dont understand", "unclear", "lost",
    "what do you mean", "not sure", "difficult", "explain again",
]

UNDERSTANDING_MARKERS = ["understand", "got it", "makes sense"]

FALLBACK_NOTICE = (
    "(Note: I'm currently running in fallback mode because the AI service is "
    "unavailable, so this answer is more general than usual.)"
)

Prompt = Union[str, List[Dict[str, str]]]


def last_user_message(prompt: Prompt) -> str:
    """Text of the most recent user turn in a prompt or message list."""
    if isinstance(prompt, str):
        return prompt
    for message in reversed(prompt):
        if message.get("role") == "user":
            return message.get("content", "")
    return prompt[-1].get("content", "") if prompt else ""


def extract_topic(text: str) -> str:
    """Best-effort topic of a question: a known keyword, else the first content words."""
    lowered = text.lower()
    for keyword in TOPIC_KEYWORDS:
        if keyword in lowered:
            return keyword

    words = [w for w in re.findall(r"[a-zA-Z][a-zA-Z0-9.+#-]*", lowered) if len(w) > 3 and w not in STOPWORDS]
    if words:
        return " ".join(words[:3])
    return "technology"


def generate_fallback_response(prompt: Prompt) -> str:
    """Deterministic, templated answer built from the last user message."""
    question = last_user_message(prompt)
    topic = extract_topic(question)

    return (
        f"I understand you're asking about {topic}. "
        f"Here is a general way to approach it.\n\n"
        f"1. Start with the core idea: make sure you can describe what {topic} is "
        f"and what problem it solves in one or two sentences.\n"
        f"2. Look at a small, concrete example of {topic} and trace through it step by step.\n"
        f"3. Connect it to something you already know, and note where the analogy breaks down.\n"
        f"4. Practice: try a short exercise that uses {topic}, then check your result.\n\n"
        f"If you tell me which part of {topic} is unclear, I can focus on that.\n\n"
        f"{FALLBACK_NOTICE}"
    )


def analyze_understanding_locally(message: str, concepts: List[str]) -> UnderstandingAnalysis:
    """Keyword heuristics for comprehension when the service cannot be asked."""
    lowered = message.lower()
    confused = any(marker in lowered for marker in CONFUSION_MARKERS)

    if confused:
        mentioned = [c for c in concepts if c.lower() in lowered]
        return UnderstandingAnalysis(
            is_understanding=False,
            confused_concepts=mentioned,
            confidence_score=0.3,
        )

    if any(marker in lowered for marker in UNDERSTANDING_MARKERS):
        return UnderstandingAnalysis(is_understanding=True, confidence_score=0.8)

    return UnderstandingAnalysis(is_understanding=True, confidence_score=0.5)
