"""Pull Python source out of a model response that may contain markdown."""

import re

CODE_BLOCK_RE = re.compile(r"```\s*(?:python)?\s*([\s\S]*?)\s*```")
INCOMPLETE_BLOCK_RE = re.compile(r"```\s*(?:python)?\s*\n([\s\S]*)\Z")

NO_CODE_STUB = (
    "# No Python code was generated.\n"
    "# Please try rephrasing your request or use /refine to ask for actual code."
)

_PROSE_PREFIXES = ("Here is", "Step ", "The ")
_CODE_MARKERS = ("def ", "class ", "import ", "=")


def is_just_markdown_text(text: str) -> bool:
    """Heuristic: True when ``text`` reads as prose rather than code."""
    code_lines = 0
    text_lines = 0
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if (
            stripped.startswith("##")
            or (stripped.startswith("#") and "=" not in stripped and "import" not in stripped)
            or stripped.startswith(_PROSE_PREFIXES)
            or "code for" in stripped
        ):
            text_lines += 1
        elif any(marker in stripped for marker in _CODE_MARKERS) or (
            "(" in stripped and ")" in stripped
        ):
            code_lines += 1
    return code_lines == 0 or text_lines > code_lines


def clean_markdown_artifacts(text: str) -> str:
    kept = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("##"):
            continue
        if stripped.startswith(("Here is", "Step ")) and ":" in stripped:
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def extract_python_code(response: str) -> str:
    """Return the code in ``response``.

    Complete fenced blocks are concatenated; failing that, a trailing
    unterminated block is used; failing that, markdown artifacts are stripped
    from the raw text. Prose-only responses yield a comment stub.
    """
    blocks = [
        block.strip()
        for block in CODE_BLOCK_RE.findall(response)
        if block.strip() and not is_just_markdown_text(block.strip())
    ]
    if blocks:
        return "\n\n".join(blocks)

    match = INCOMPLETE_BLOCK_RE.search(response)
    if match:
        code = match.group(1).strip()
        if code and not is_just_markdown_text(code):
            return code

    cleaned = clean_markdown_artifacts(response.strip())
    if is_just_markdown_text(cleaned):
        return NO_CODE_STUB
    return cleaned
