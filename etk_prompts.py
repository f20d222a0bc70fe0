# etk_prompts.py
from typing import Dict, Sequence, Tuple

# Prefix of every context block; the model must not copy this material into its output.
CONTEXT_PREAMBLE = "Do not include any of the following, this is only to provide context"
BEFORE_LABEL = "Chapters Before:"
AFTER_LABEL = "Chapters After:"


PRESETS: Dict[str, Dict[str, str]] = {
    # --- Line-level rewrites ---
    "copyedit": {
        "system": (
            "You are a line-by-line copy editor in a literary publishing house. "
            "Return the full chapter markup with corrections applied and nothing else."
        ),
        "user": (
            "Correct typos, grammar, punctuation and obvious repetitions in the chapter below. "
            "Write in {english_variant}. Keep every HTML tag and attribute exactly as it is; "
            "change only the text between tags."
        ),
    },
    "modernise": {
        "system": (
            "You update the prose of older novels for contemporary readers. "
            "Return the full chapter markup and nothing else."
        ),
        "user": (
            "Rewrite the chapter below in clear, modern {english_variant} with a {style} tone. "
            "Preserve plot, dialogue meaning and paragraph structure. "
            "Keep every HTML tag and attribute exactly as it is."
        ),
    },
    # --- Translation ---
    "translate": {
        "system": (
            "You are a literary translator. Return the full chapter markup, translated, and nothing else."
        ),
        "user": (
            "Translate the chapter below into {language}. Keep names, tone ({style}) and paragraph breaks. "
            "Keep every HTML tag and attribute exactly as it is; translate only the text between tags."
        ),
    },
}

PRESET_DEFAULTS = {
    "english_variant": "British English",
    "style": "understated",
    "language": "English",
}


def resolve_preset(name: str, **extras) -> Tuple[str, str]:
    """
    Render PRESETS[name] into (instruction, prompt).

    Uses targeted placeholder substitution (not str.format) so that prompts
    with literal braces don't break. Only the known defaults and any
    explicitly provided extras are replaced.
    """
    preset = PRESETS.get(name)
    if preset is None:
        raise KeyError(f"Unknown preset: {name!r}")
    merged = {**PRESET_DEFAULTS, **(extras or {})}

    def _subst(s: str) -> str:
        s = (s or "")
        for k, v in merged.items():
            s = s.replace("{" + k + "}", str(v))
        return s.strip()

    return _subst(preset.get("system")), _subst(preset.get("user"))


# --- context windows ----------------------------------------------------------

def context_bounds(length: int, index: int, before: int, after: int) -> Tuple[int, int]:
    """
    Return (start, end) such that the context is sequence[start:index] plus
    sequence[index + 1:end]. Both bounds are clamped to the sequence.
    """
    start = max(0, index - before)
    end = min(index + after + 1, length)
    return start, end


def build_context(sequence: Sequence[str], index: int, before: int, after: int) -> str:
    """
    Build the context block for sequence[index]: up to `before` preceding
    and up to `after` following unit texts. The unit itself is never
    included. With before == after == 0 the result is the empty string.
    """
    if before <= 0 and after <= 0:
        return ""
    start, end = context_bounds(len(sequence), index, max(0, before), max(0, after))

    parts = [CONTEXT_PREAMBLE, "\n" + BEFORE_LABEL + "\n"]
    for i in range(start, index):
        parts.append(sequence[i])
        parts.append("\n")

    parts.append("\n" + AFTER_LABEL + "\n")
    for i in range(index + 1, end):
        parts.append(sequence[i])
        parts.append("\n")
    return "".join(parts)


def render_request(prompt: str, content: str, context: str) -> str:
    """Request text sent as the user turn: prompt, unit content, then context."""
    return prompt + "\n" + content + "\n" + context
