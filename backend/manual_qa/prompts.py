"""Prompt templates for manual question answering."""
from typing import List

SYSTEM_PROMPT_BASE = """You are a manual assistant. You answer questions about the selected manual using ONLY the excerpts provided below.

RULES:
1. Use only the information in the manual excerpts. Do not use outside knowledge.
2. Cite excerpts inline with their source numbers, e.g. (1), (2), in the order they appear in your answer.
3. Keep answers concise and practical. Use lists for step-by-step procedures.
4. After your answer, append a follow-up block in EXACTLY this format (no text after it):
[followups]
- Question 1
- Question 2
- Question 3
[/followups]
The follow-up questions are written in the user's voice and build on their latest message."""

NO_CONTEXT_INSTRUCTION = (
    "NO MANUAL EXCERPTS MATCHED THIS QUESTION. Tell the user that this information "
    "is not available in the selected manual. Do not guess and do not answer from "
    "general knowledge."
)

CONTEXT_HEADER = "MANUAL EXCERPTS (cite using the Source numbers):"


def build_system_prompt(context: str) -> str:
    """
    Build the system prompt for one chat turn.

    Args:
        context: Grounding context from retrieval; empty when nothing matched

    Returns:
        System prompt with either the excerpts or the no-context instruction
    """
    if not context.strip():
        return f"{SYSTEM_PROMPT_BASE}\n\n{NO_CONTEXT_INSTRUCTION}"
    return f"{SYSTEM_PROMPT_BASE}\n\n{CONTEXT_HEADER}\n\n{context}"


def build_messages(system_prompt: str, history: List[dict]) -> List[dict]:
    return [{"role": "system", "content": system_prompt}, *history]
