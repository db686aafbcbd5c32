"""
Prompt templates for the analysis stages.

All templates are str.format strings; literal braces are doubled.
"""

# ---------------------------------------------------------------------------
# Topic extraction
# ---------------------------------------------------------------------------

TOPIC_PROMPT = """\
Identify the 5-8 main topics discussed in the text below.

For each topic give a short name (2-5 words) and a one-sentence description.
{section_context}\
Respond ONLY with a JSON array, no commentary:
[{{"name": "Topic name", "description": "One sentence description"}}]

TEXT{part_label}:
{text}
"""

TOPIC_SECTION_CONTEXT = """\
The text contains these sections, which may hint at its structure: {titles}
"""

# ---------------------------------------------------------------------------
# Keyword extraction
# ---------------------------------------------------------------------------

KEYWORD_PROMPT = """\
Extract the 10-15 most important keywords or key phrases from the text below.
Return them as a single comma-separated list with no numbering, bullets or \
explanation.

TEXT{part_label}:
{text}
"""

# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

SUMMARY_PROMPT = """\
Write a concise, well-organised summary of the text below. Capture the main \
ideas, key points and any conclusions. Use plain prose.

TEXT:
{text}
"""

CHUNK_SUMMARY_PROMPT = """\
This is part {part} of {total} of a longer document. Summarise the key points \
of this part only, in a few sentences. Do not add an introduction or refer to \
other parts.

PART {part} OF {total}:
{text}
"""

SYNTHESIS_PROMPT = """\
Below are summaries of the {total} consecutive parts of one document. Combine \
them into a single coherent summary of the whole document. Remove repetition \
and keep the most important points.

PART SUMMARIES:
{text}
"""

TRUNCATION_NOTE = "\n\n... [content truncated]"


def part_label(index: int, total: int) -> str:
    """' (part 2 of 5)' for multi-chunk runs, '' otherwise."""
    if total <= 1:
        return ""
    return f" (part {index + 1} of {total})"


def clip(text: str, max_chars: int) -> str:
    """Bound a prompt payload, marking the cut."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_NOTE
