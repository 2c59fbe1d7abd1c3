"""WebVTT caption tracks built from a script, either heuristically or by a text model."""
import logging
import re
from typing import List, NamedTuple

from .errors import ContractViolation
from .prompts import RESYNC_CAPTIONS_TEMPLATE

logger = logging.getLogger(__name__)

VTT_HEADER = "WEBVTT"
DIALOGUE_SECONDS = 4
NARRATION_SECONDS = 3

HEURISTIC = "heuristic"
AI = "ai"

_TIMESTAMP = r"(?:(\d{2,}):)?(\d{2}):(\d{2})\.(\d{3})"
_CUE_TIMING_RE = re.compile(rf"^\s*{_TIMESTAMP}\s+-->\s+{_TIMESTAMP}")
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n```\s*$", re.DOTALL)


class Cue(NamedTuple):
    start: float
    end: float
    text: str


def format_timestamp(seconds: float) -> str:
    total_ms = int(round(seconds * 1000))
    h, rem = divmod(total_ms, 3_600_000)
    m, rem = divmod(rem, 60_000)
    s, ms = divmod(rem, 1000)
    return f"{h:02d}:{m:02d}:{s:02d}.{ms:03d}"


def _seconds(h, m, s, ms) -> float:
    return int(h or 0) * 3600 + int(m) * 60 + int(s) + int(ms) / 1000.0


def is_dialogue(line: str) -> bool:
    # Dialogue carries a speaker delimiter or is indented
    return ":" in line or line.startswith("  ")


def heuristic_cues(script: str) -> List[Cue]:
    cues = []
    start = 0
    for line in script.split("\n"):
        if not line.strip():
            continue
        end = start + (DIALOGUE_SECONDS if is_dialogue(line) else NARRATION_SECONDS)
        cues.append(Cue(start, end, line.strip()))
        start = end
    return cues


def render_vtt(cues: List[Cue]) -> str:
    parts = [VTT_HEADER, ""]
    for i, cue in enumerate(cues, 1):
        parts += [str(i), f"{format_timestamp(cue.start)} --> {format_timestamp(cue.end)}", cue.text, ""]
    return "\n".join(parts)


def build_heuristic_vtt(script: str) -> str:
    return render_vtt(heuristic_cues(script))


def parse_cues(document: str) -> List[Cue]:
    cues = []
    lines = document.splitlines()
    i = 0
    while i < len(lines):
        match = _CUE_TIMING_RE.match(lines[i])
        i += 1
        if not match:
            continue
        g = match.groups()
        text = []
        while i < len(lines) and lines[i].strip():
            text.append(lines[i].strip())
            i += 1
        cues.append(Cue(_seconds(*g[:4]), _seconds(*g[4:]), "\n".join(text)))
    return cues


def validate_vtt(document: str, require_cues: bool = True) -> List[Cue]:
    """Check the header and that cue windows are ordered and non-overlapping."""
    body = document.lstrip("\ufeff")
    if not body.startswith(VTT_HEADER):
        raise ContractViolation("Caption track is missing the WEBVTT header")
    cues = parse_cues(body)
    if require_cues and not cues:
        raise ContractViolation("Caption track has no cues")
    previous_end = 0.0
    for n, cue in enumerate(cues, 1):
        if cue.end <= cue.start:
            raise ContractViolation(f"Caption cue {n} ends before it starts")
        if cue.start < previous_end:
            raise ContractViolation(f"Caption cue {n} overlaps the previous cue")
        previous_end = cue.end
    return cues


def strip_code_fences(text: str) -> str:
    text = text.strip()
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text


class CaptionSynchronizer:
    def __init__(self, ai=None, backoff=None, strategy: str = AI):
        self.ai = ai
        self.backoff = backoff
        self.strategy = strategy

    async def sync(self, script: str, strategy: str = None) -> str:
        strategy = strategy or self.strategy
        if strategy == HEURISTIC:
            return build_heuristic_vtt(script)
        if strategy == AI:
            return await self.resync_with_ai(script)
        raise ValueError(f"Unknown caption strategy: {strategy}")

    async def resync_with_ai(self, script: str) -> str:
        logger.info("Resyncing captions with AI...")
        prompt = RESYNC_CAPTIONS_TEMPLATE.format(script=script)
        raw = await self.backoff.run(self.ai.generate_text, prompt)
        document = strip_code_fences(raw)
        cues = validate_vtt(document)
        logger.info(f"AI caption track accepted with {len(cues)} cues")
        return document + "\n"
