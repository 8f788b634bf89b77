from __future__ import annotations

from typing import Optional, Sequence

from common.schemas import FixOptions

ANALYSIS_SYSTEM_PROMPT = """\
You are a forensic writing analyst. Assess the provided text segment for
machine-generated phrasing and for passages likely to match published sources.

You MUST respond with valid JSON matching this schema:
{
  "plagiarismScore": 0-100,
  "aiProbability": 0-100,
  "critique": "string, the most important problem in this segment",
  "detectedIssues": ["string"],
  "paragraphBreakdown": [
    {"text": "string", "riskScore": 0-100, "matchType": "AI | PLAGIARISM | MIXED | SAFE", "evidence": "string"}
  ],
  "sourcesFound": [{"url": "string", "title": "string", "snippet": "string", "similarity": 0-100}],
  "forensics": {
    "avgSentenceLength": number,
    "sentenceVariance": number,
    "uniqueWordRatio": 0-1,
    "aiTriggerWordsFound": ["string"],
    "readabilityScore": 0-100
  }
}
"""

REWRITE_SYSTEM_PROMPT = """\
You are an experienced editor. Rewrite the provided segment so it reads as
natural, varied human prose while keeping its meaning and claims intact.

Keep every heading, subheading and list. Use Markdown for bold, italics and headings.
"""

REWRITE_SCHEMA = """\
Respond with valid JSON:
{
  "rewrittenText": "string",
  "improvementsMade": ["string"],
  "bibliography": [{"title": "string", "url": "string", "author": "string", "year": "string", "snippet": "string", "fullCitation": "string"}]
}"""

SLIDES_PROMPT = """\
Convert the text into a presentation deck. Return a JSON array:
[{"title": "string", "bullets": ["string"], "speakerNotes": "string"}]

Text:
"""

SUMMARY_PROMPT = """\
Write an executive summary memo for the text. Return JSON:
{"to": "string", "from": "string", "subject": "string", "executiveSummary": "string",
 "keyActionItems": ["string"], "conclusion": "string"}

Text:
"""


def build_analysis_prompt(segment: str, label: str) -> str:
    return f"""\
Segment {label}:
{segment}

Analyze this segment and respond with the JSON structure specified."""


def build_rewrite_system_prompt(options: FixOptions, style_sample: Optional[str] = None) -> str:
    parts = [
        REWRITE_SYSTEM_PROMPT,
        f"Mode: {options.mode.value}. Rewrite strength: {options.strength}/100.",
        f"Use {options.dialect.value} English spelling and idiom.",
    ]
    if style_sample:
        parts.append(f'Match the voice of this writing sample: "{style_sample}"')
    if options.include_citations and options.citation_style:
        parts.append(
            "Verify claims with search. For every source used, add a bibliography "
            f"entry with a full citation in {options.citation_style.value} format."
        )
    else:
        parts.append("Keep the original claims; do not add citations.")
    parts.append(REWRITE_SCHEMA)
    return "\n\n".join(parts)


def build_rewrite_prompt(segment: str, label: str, issues: Sequence[str] = ()) -> str:
    context_parts = [f"Segment {label}."]
    if issues:
        context_parts.append("Known issues: " + "; ".join(issues))

    return f"""\
{chr(10).join(context_parts)}

Text:
{segment}"""
