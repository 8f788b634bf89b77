from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts and emits the camelCase keys the model and the UI speak."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HumanizeMode(str, Enum):
    standard = "Standard"
    ghost = "Ghost"
    academic = "Academic"
    creative = "Creative"


class CitationStyle(str, Enum):
    apa = "APA"
    mla = "MLA"
    chicago = "Chicago"
    harvard = "Harvard"
    ieee = "IEEE"


class Dialect(str, Enum):
    us = "US"
    uk = "UK"
    ca = "CA"
    au = "AU"


class MatchType(str, Enum):
    ai = "AI"
    plagiarism = "PLAGIARISM"
    mixed = "MIXED"
    safe = "SAFE"


# --- Analysis ---

class ParagraphAnalysis(CamelModel):
    text: str = ""
    risk_score: float = 0
    match_type: Optional[MatchType] = None
    evidence: Optional[str] = None


class SourceMatch(CamelModel):
    url: str = ""
    title: str = ""
    snippet: str = ""
    similarity: float = 0


class ForensicData(CamelModel):
    avg_sentence_length: float = 0
    sentence_variance: float = 0
    unique_word_ratio: float = 0
    ai_trigger_words_found: list[str] = []
    readability_score: float = 0


class ChunkAnalysis(CamelModel):
    """Parsed classifier output for a single chunk."""

    plagiarism_score: float = 0
    ai_probability: float = 0
    critique: Optional[str] = None
    detected_issues: list[str] = []
    paragraph_breakdown: list[ParagraphAnalysis] = []
    sources_found: list[SourceMatch] = []
    forensics: Optional[ForensicData] = None


class AnalysisResult(CamelModel):
    original_score: int
    plagiarism_score: int
    ai_probability: int
    critique: str
    detected_issues: list[str]
    paragraph_breakdown: list[ParagraphAnalysis]
    sources_found: list[SourceMatch]
    forensics: ForensicData
    chunks_total: int = 0
    chunks_failed: int = 0


# --- Rewriting ---

class FixOptions(CamelModel):
    include_citations: bool = False
    citation_style: Optional[CitationStyle] = None
    mode: HumanizeMode = HumanizeMode.standard
    strength: int = Field(default=50, ge=0, le=100)
    dialect: Dialect = Dialect.us
    style_sample: Optional[str] = None


class BibliographyEntry(CamelModel):
    url: str = ""
    title: str = ""
    author: str = ""
    year: str = ""
    snippet: str = ""
    full_citation: str = ""


class ChunkRewrite(CamelModel):
    """Parsed rewriter output for a single chunk."""

    rewritten_text: str = ""
    improvements_made: list[str] = []
    bibliography: list[BibliographyEntry] = []
    new_plagiarism_score: float = 0
    new_ai_probability: float = 0


class FixResult(CamelModel):
    rewritten_text: str
    new_plagiarism_score: int
    new_ai_probability: int
    improvements_made: list[str]
    bibliography: list[BibliographyEntry]
    references: list[str]
    chunks_total: int = 0
    chunks_failed: int = 0


# --- Derived artifacts ---

class SlideContent(CamelModel):
    title: str = ""
    bullets: list[str] = []
    speaker_notes: str = ""


class SummaryMemo(CamelModel):
    to: str = "Faculty Board"
    sender: str = Field(default="Research Analyst", alias="from")
    subject: str = "Synthesis Report"
    executive_summary: str = "Summary unavailable."
    key_action_items: list[str] = []
    conclusion: str = ""


# --- HTTP requests ---

class AnalyzeRequest(CamelModel):
    text: str


class FixRequest(CamelModel):
    text: str
    issues: list[str] = []
    options: FixOptions = FixOptions()


class TextRequest(CamelModel):
    text: str


# --- WebSocket messages: client ↔ llm service ---

class StreamRequestType(str, Enum):
    analyze = "analyze"
    fix = "fix"


class StreamRequest(CamelModel):
    type: StreamRequestType
    text: str
    issues: list[str] = []
    options: FixOptions = FixOptions()


class StreamMessageType(str, Enum):
    progress = "progress"
    result = "result"
    error = "error"


class ProgressMessage(CamelModel):
    type: StreamMessageType = StreamMessageType.progress
    percent: int
    message: str


class ResultMessage(CamelModel):
    type: StreamMessageType = StreamMessageType.result
    result: Union[AnalysisResult, FixResult]


class ErrorMessage(CamelModel):
    type: StreamMessageType = StreamMessageType.error
    detail: str
    code: str = "error"


# --- WebSocket messages: client ↔ live service ---

class LiveClientMessageType(str, Enum):
    start = "start"
    end = "end"


class LiveStartMessage(CamelModel):
    type: LiveClientMessageType = LiveClientMessageType.start
    session_id: str
    mode: HumanizeMode = HumanizeMode.standard
    sample_rate: int = 16000
    encoding: str = "pcm_f32le"
    channels: int = 1
    microphone_granted: bool = True
    # microphone frames follow as binary messages, not in JSON


class LiveServerMessageType(str, Enum):
    open = "open"
    input_transcript = "input_transcript"
    output_transcript = "output_transcript"
    turn_complete = "turn_complete"
    audio = "audio"
    stop_audio = "stop_audio"
    error = "error"
    closed = "closed"


class TranscriptMessage(CamelModel):
    type: LiveServerMessageType
    session_id: str
    text: str


class TurnCompleteMessage(CamelModel):
    type: LiveServerMessageType = LiveServerMessageType.turn_complete
    session_id: str
    input_text: str
    output_text: str


class AudioScheduledMessage(CamelModel):
    type: LiveServerMessageType = LiveServerMessageType.audio
    session_id: str
    source_id: int
    start_time: float
    duration: float
    sample_rate: int
    # PCM16 payload follows as a binary frame


class StopAudioMessage(CamelModel):
    type: LiveServerMessageType = LiveServerMessageType.stop_audio
    session_id: str
    source_ids: list[int]


class LiveStatusMessage(CamelModel):
    type: LiveServerMessageType
    session_id: str


class LiveErrorMessage(CamelModel):
    type: LiveServerMessageType = LiveServerMessageType.error
    session_id: str
    detail: str
    code: str = "error"
