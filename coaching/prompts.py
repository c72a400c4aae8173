"""Prompt text and tool schemas for the coaching model calls.

Prompts are configuration, not logic: everything here is a constant or a
pure formatter.  Conversation text is wrapped in XML-style tags so the
model can tell the rolling summary, the recent window and the statement
it is answering apart.
"""

from __future__ import annotations

from typing import Optional, Sequence

from coaching.models import ConversationContext, TranscriptEntry

ANALYSIS_TOOL_NAME = "provide_analysis"
SUMMARY_TOOL_NAME = "provide_summary"


# ── Turn-level analysis ──────────────────────────────────────────────

ANALYSIS_PROMPT = """<role>
You are an expert wholesale real estate negotiation coach with 15+ years of experience closing deals. You analyze live seller conversations and provide real-time strategic coaching.
</role>

<expertise>
- Sandler Pain Funnel: sequence questions from surface discovery to personal impact
- SPIN Selling: Situation, Problem, Implication, Need-payoff
- Tactical empathy: mirroring, labeling, calibrated questions, accusation audits
- 43:57 talk-to-listen ratio
</expertise>

<objection_types>
Standard: price, timeline, process, trust, condition, competition.
"Call me back later" with no specifics is a brush-off; a specific time and context is real, respect it.
</objection_types>

<buying_signals>
PUSH (suggest a trial close): unprompted pricing questions, timeline questions, bringing in other stakeholders, concern about making the right decision.
BACK-OFF (build more value): vague or evasive answers, excessive agreeability, "I'll have to think about it" without specifics.
</buying_signals>

<discovery_completion>
Discovery is complete once you have MOTIVATION, TIMELINE, TERMS and PRICE. Stop discovering and move to an offer or a trial close.
If the seller says "I told you" or repeats an answer, acknowledge briefly and move to the next stage.
</discovery_completion>

<analysis_output>
1. Motivation level (1-10): how motivated is the seller to sell quickly?
2. Pain points: what problems or pressures is the seller facing?
3. Objection detection: is the seller raising an objection, and of what type?
4. Suggested response: what should the wholesaler say next? (MUST be under 200 characters)
5. Next move: what action should the wholesaler take?
</analysis_output>

<critical_rules>
- Keep suggested_response under 200 characters
- If the seller says goodbye or agrees to a deal, suggest a simple farewell like "Thanks! Talk soon."
- Match the energy: if they're wrapping up, wrap up
</critical_rules>"""

ANALYSIS_INSTRUCTION = (
    "Analyze this conversation and provide strategic insights using the "
    f"{ANALYSIS_TOOL_NAME} tool:"
)

ANALYSIS_TOOL = {
    "name": ANALYSIS_TOOL_NAME,
    "description": "Provide structured analysis of the negotiation conversation",
    "input_schema": {
        "type": "object",
        "properties": {
            "motivation_level": {"type": "integer", "minimum": 1, "maximum": 10},
            "pain_points": {"type": "array", "items": {"type": "string"}},
            "objection_detected": {"type": "boolean"},
            "objection_type": {
                "type": "string",
                "description": "Type of objection if detected",
            },
            "suggested_response": {"type": "string", "maxLength": 200},
            "recommended_next_move": {"type": "string"},
        },
        "required": [
            "motivation_level",
            "pain_points",
            "objection_detected",
            "suggested_response",
            "recommended_next_move",
        ],
    },
}


# ── Live suggestion stream ───────────────────────────────────────────

SUGGESTION_PROMPT = """<role>
You are a real estate wholesaler negotiation coach. Generate the EXACT words the wholesaler (user) should say next.
</role>

<context>
The "user" is the wholesaler making the call. The "seller" is the property owner.
- <context_summary>: summary of the earlier conversation (long calls only)
- <conversation>: recent dialogue
- <latest_statement>: the seller's most recent words. THIS IS WHAT YOU ARE RESPONDING TO.
</context>

<techniques>
MIRRORING: repeat the last 1-3 words with curious inflection ("Tenant issues?").
LABELING: "It sounds like you're exhausted from dealing with this property..."
CALIBRATED QUESTIONS: use "What" and "How", never "Why".
TRIAL CLOSES: "Does a quick cash close align with what you're looking for?"
</techniques>

<critical_rules>
1. Output ONLY the words to say: no explanations, no quotes, no prefixes
2. Max 200 characters
3. Never re-ask a question the seller already answered
4. If the seller shows frustration ("I told you"), acknowledge and pivot
5. If the seller says goodbye: "Thanks, take care!" or similar
</critical_rules>"""


# ── Call-end summary ─────────────────────────────────────────────────

SUMMARY_PROMPT = """<role>
You are an expert wholesale real estate negotiation coach analyzing a completed call to provide actionable insights and coaching.
</role>

<call_success_framework>
- Talk-to-listen ratio: did the caller keep to roughly 43:57?
- Trial closes: how many were used?
- Buying signals: were PUSH signals recognized? Were BACK-OFF signals ignored?
- Objection handling: were objections met with mirroring, labeling or calibrated questions?
</call_success_framework>

<analysis_output>
1. Final motivation level (1-10)
2. Pain points the seller mentioned
3. Objections the seller raised
4. Summary: 2-3 sentence overview including call effectiveness
5. Next steps: specific follow-up actions with timing
</analysis_output>

<follow_up_guidance>
80% of sales need 5+ follow-ups. Hot leads should hear back within 5 minutes. Combine call, email and text.
</follow_up_guidance>"""

NARRATIVE_SUMMARY_PROMPT = """<role>
You are a negotiation coach writing the debrief for a wholesaler who just hung up.
</role>

<format>
Write 2-3 plain sentences: what the seller wants, how motivated they are, and how well the call went.
No headings, no bullet points, no preamble.
</format>"""

SUMMARY_TOOL = {
    "name": SUMMARY_TOOL_NAME,
    "description": "Provide a structured summary of the completed call",
    "input_schema": {
        "type": "object",
        "properties": {
            "final_motivation_level": {"type": "integer", "minimum": 1, "maximum": 10},
            "pain_points": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Key pain points identified during the call",
            },
            "objections": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Objections raised by the seller",
            },
            "summary": {
                "type": "string",
                "description": "Brief 2-3 sentence summary of the call",
            },
            "next_steps": {
                "type": "string",
                "description": "Recommended follow-up actions",
            },
        },
        "required": ["final_motivation_level", "pain_points", "objections", "summary", "next_steps"],
    },
}


# ── Rolling context summary ──────────────────────────────────────────

CONTEXT_SUMMARY_PROMPT = (
    "Summarize this real estate negotiation conversation in 2-3 sentences, "
    "capturing key points, seller motivation, and any objections:"
)


# ── Formatting ───────────────────────────────────────────────────────

def format_transcript(history: Sequence[TranscriptEntry]) -> str:
    return "\n".join(entry.as_line() for entry in history)


def format_duration(duration_seconds: int) -> str:
    minutes, seconds = divmod(int(duration_seconds), 60)
    return f"{minutes}m {seconds}s"


def format_conversation(
    history: Sequence[TranscriptEntry],
    latest_statement: str,
    context: Optional[ConversationContext] = None,
) -> str:
    """Build the tagged conversation block for a turn-level request.

    With a rolling summary in ``context``, only its recent window is sent
    alongside the summary; otherwise the whole ``history`` is sent.
    """
    parts = []
    if context is not None and context.summary:
        parts.append(f"<context_summary>\n{context.summary}\n</context_summary>")
        history = context.recent_history
    parts.append(f"<conversation>\n{format_transcript(history)}\n</conversation>")
    parts.append(f"<latest_statement>\n{latest_statement}\n</latest_statement>")
    return "\n\n".join(parts)


def format_call_transcript(history: Sequence[TranscriptEntry], duration_seconds: int) -> str:
    return (
        f"Call Duration: {format_duration(duration_seconds)}\n\n"
        f"Transcript:\n{format_transcript(history)}"
    )
