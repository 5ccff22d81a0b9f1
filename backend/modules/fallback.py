"""
Offline episode writer.

Used whenever the remote provider cannot be trusted for the current job. Output
depends only on the notebook, the outline and the segment index, so the same
inputs always produce the same dialogue and timestamps.
"""

from __future__ import annotations

from modules.episode_types import (
    Notebook,
    Outline,
    OutlineSegment,
    ScriptSegment,
    TranscriptSegment,
)

SEGMENT_WINDOW_MS = 180_000
LINE_SPACING_MS = 8_000
LINE_DURATION_MS = 7_500
SNIPPET_CHARS = 400

_FILLER_TITLE = "the material in this vault"
_FILLER_SNIPPET = "the notes collected here describe the topic from several angles"


def _outline_templates(title: str) -> list[list[str]]:
    return [
        ["Setting the scene", f"What {title} is about"],
        ["Core ideas", "Reading the evidence closely"],
        ["Why it matters", "Who is affected"],
        ["Connecting the threads", "Patterns across sources"],
        ["Key takeaways", "Open questions"],
    ]


def generate_local_outline(notebook: Notebook) -> Outline:
    title = (notebook.title or "").strip() or "this notebook"
    segments = [
        OutlineSegment(index=i, topics=topics)
        for i, topics in enumerate(_outline_templates(title))
    ]
    return Outline(segments=segments, origin="local")


def _snippet(text: str, start: int, length: int) -> str:
    piece = " ".join((text or "")[start : start + length].split())
    return piece or _FILLER_SNIPPET


def _dialogue(
    index: int,
    notebook_title: str,
    source_title: str,
    content: str,
    topics: list[str],
) -> list[tuple[str, str]]:
    topic_text = " and ".join(topics) if topics else "the main themes"
    templates = [
        [
            ("Alex", f"Welcome in. Today we're opening up {source_title}. Jordan, where do we start?"),
            ("Jordan", f"With the first thing that jumped out at me: {_snippet(content, 0, 100)}."),
            ("Alex", "That gives us a solid footing for everything that follows."),
        ],
        [
            ("Alex", f"Let's slow down and look at {topic_text}."),
            ("Jordan", f"{source_title} keeps coming back to the same few ideas, which makes it easy to follow."),
            ("Alex", "And repetition like that usually tells you what the authors care about most."),
        ],
        [
            ("Alex", f"So what does {source_title} change for the people living with it?"),
            ("Jordan", f"Quite a lot, if you read this part: {_snippet(content, 100, 100)}."),
            ("Alex", "In other words, less friction in the day to day."),
        ],
        [
            ("Alex", "We've covered a fair bit of ground. How do the pieces fit together?"),
            ("Jordan", f"Across {notebook_title} the sources point in a similar direction."),
            ("Alex", "Which is reassuring, since they were written for different audiences."),
        ],
        [
            ("Alex", "Time to wrap up. What should listeners take away?"),
            ("Jordan", f"That {source_title} is worth watching, and the trend looks set to continue."),
            ("Alex", "A good place to stop. Thanks, Jordan, and thanks everyone for listening."),
        ],
    ]
    return templates[index % len(templates)]


def generate_local_script_chunk(notebook: Notebook, outline: Outline, index: int) -> ScriptSegment:
    if index < 0:
        raise ValueError(f"segment index must be non-negative: {index}")
    topics: list[str] = []
    if 0 <= index < len(outline.segments):
        topics = list(outline.segments[index].topics)

    sources = notebook.sources
    if sources:
        source = sources[index % len(sources)]
        source_title = source.title.strip() or _FILLER_TITLE
        content = (source.content or "")[:SNIPPET_CHARS]
    else:
        source_title = _FILLER_TITLE
        content = ""
    notebook_title = (notebook.title or "").strip() or "this notebook"

    lines = _dialogue(index, notebook_title, source_title, content, topics)
    base_ms = index * SEGMENT_WINDOW_MS
    transcript: list[TranscriptSegment] = []
    for i, (speaker, text) in enumerate(lines):
        start_ms = base_ms + i * LINE_SPACING_MS
        transcript.append(
            TranscriptSegment(
                speaker=speaker,
                text=text,
                start_ms=start_ms,
                end_ms=start_ms + LINE_DURATION_MS,
            )
        )
    script = "\n".join(f"{speaker}: {text}" for speaker, text in lines)
    return ScriptSegment(script=script, transcript=transcript)
