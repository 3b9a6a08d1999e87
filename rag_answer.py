# rag_answer.py — rule-based answers built from retrieved segments (no LLM)

from typing import List

from rag_demo import Match


EXPLANATION_MIN_SCORE = 0.7
MAX_BULLETS = 2

DISCLAIMER = (
    "💡 For more detailed answers, consider integrating with a language model "
    "like Gemini or OpenAI GPT!"
)


def _definition(matches: List[Match]) -> List[str]:
    lines = ["Based on the retrieved documents:"]
    if matches:
        lines.append(matches[0].text)
    return lines


def _explanation(matches: List[Match]) -> List[str]:
    lines = ["Here's an explanation based on the knowledge base:"]
    # Only the first strong match is used; with none above the threshold the
    # header stands alone.
    for m in matches:
        if m.score > EXPLANATION_MIN_SCORE:
            lines.append(f"• {m.text}")
            break
    return lines


def _comparison(matches: List[Match]) -> List[str]:
    lines = ["Here are the relevant comparisons I found:"]
    lines.extend(f"• {m.text}" for m in matches[:MAX_BULLETS])
    return lines


def _summary(matches: List[Match]) -> List[str]:
    lines = ["Here are the most relevant pieces of information I found:"]
    lines.extend(f"• {m.text}" for m in matches[:MAX_BULLETS])
    return lines


# Checked in order; first rule whose keyword appears in the question wins.
RULES = [
    (("what is", "define"), _definition),
    (("how", "explain"), _explanation),
    (("difference", "compare"), _comparison),
]


def select_rule(question: str):
    q = question.lower()
    for keywords, rule in RULES:
        if any(kw in q for kw in keywords):
            return rule
    return _summary


def render_answer(question: str, matches: List[Match]) -> str:
    lines = select_rule(question)(matches)
    lines.append("")
    lines.append(DISCLAIMER)
    return "\n".join(lines)
