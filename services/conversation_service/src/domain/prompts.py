"""
Haven Conversation Service - Prompt Builders.
Each builder returns a self-contained prompt that asks for a JSON-only reply.
"""
from __future__ import annotations
import json
from enum import Enum
from typing import Iterable

from .entities import Message, PlanVersion, RiskAssessment
from .models import AnalysisResult, ConversationContext


class PromptTask(str, Enum):
    """Pipeline tasks that talk to the inference gateway."""
    SENTIMENT = "sentiment"
    CRISIS_SCAN = "crisis_scan"
    ANALYSIS = "analysis"
    THERAPIST = "therapist"
    PLAN_REVISION = "plan_revision"
    EMERGENCY = "emergency"

    @property
    def header(self) -> str:
        return _HEADERS[self]


_HEADERS = {
    PromptTask.SENTIMENT: "**SENTIMENT ANALYSIS REQUEST**",
    PromptTask.CRISIS_SCAN: "**CRISIS PATTERN SCAN**",
    PromptTask.ANALYSIS: "**THERAPEUTIC MESSAGE ANALYSIS REQUEST**",
    PromptTask.THERAPIST: "**THERAPEUTIC RESPONSE REQUEST**",
    PromptTask.PLAN_REVISION: "**THERAPEUTIC PLAN REVISION REQUEST**",
    PromptTask.EMERGENCY: "**CRISIS RESPONSE REQUEST**",
}


def format_history(messages: Iterable[Message]) -> str:
    lines = [f"[{m.role.value}]: {m.content}" for m in messages]
    return "\n".join(lines) or "No conversation history available"


def format_goals(version: PlanVersion | None) -> str:
    if version is None:
        return "No current goals"
    return "\n\n".join(
        f"[{g.state.value}]: {g.content}\nApproach: {g.approach}; Identifier: \"{g.codename}\""
        for g in version.content.goals
    )


def format_plan_context(version: PlanVersion | None) -> str:
    if version is None:
        return "- No therapeutic plan"
    content = version.content
    return (
        f"- Focus Area: {content.focus or 'No specific focus area'}\n"
        f"- General Approach: {content.approach}\n"
        f"- Techniques: {', '.join(content.techniques)}"
    )


def format_risk(risk: RiskAssessment | None) -> str:
    return json.dumps(risk.to_dict()) if risk else "No risk assessment available"


def sentiment_prompt(message: str) -> str:
    return f"""{PromptTask.SENTIMENT.header}

Rate the emotional tone of the message below.

**Message:** "{message}"

Return ONLY valid JSON:
{{
  "score": 0.0-1.0 (0 = most negative, 1 = most positive),
  "primaryEmotion": "single word",
  "emotionalIntensity": 0.0-1.0,
  "reason": "brief explanation"
}}"""


def crisis_scan_prompt(message: str) -> str:
    return f"""{PromptTask.CRISIS_SCAN.header}

Scan the message for signs of suicidal ideation, self harm, violence, severe dissociation
or an acute crisis. Name each pattern in snake_case.

**Message:** "{message}"

Return ONLY valid JSON:
{{
  "identifiedPatterns": ["pattern_name"],
  "overallSeverity": 0.0-1.0,
  "requiresImmediateAction": true/false
}}"""


def analysis_prompt(message: Message, version: PlanVersion | None, history: Iterable[Message],
                    insights: list[str]) -> str:
    insight_lines = "\n".join(f"- {i}" for i in insights) or "No specific insights recorded yet"
    return f"""{PromptTask.ANALYSIS.header}

**Message to Analyze:** "{message.content}"

**Conversation Context:**
{format_history(history)}

**User Insights:**
{insight_lines}

**Therapeutic Plan Context:**
{format_plan_context(version)}

**Current Goals:**
{format_goals(version)}

**Analysis Tasks:**
1. Has the user achieved any of the current goals?
2. Has the user's context changed enough to require a plan revision?
3. Which goal identifier should be pursued next?
4. Which language is the user writing in?

The plan should be revised if the user shares significant new information, expresses
dissatisfaction with the current approach, their emotional state changes dramatically,
or the current goals are no longer appropriate.

Return ONLY valid JSON:
{{
  "nextGoal": "goal identifier",
  "language": "language code",
  "shouldBeRevised": true/false,
  "reason": "brief explanation"
}}"""


def therapist_prompt(context: ConversationContext, analysis: AnalysisResult, message: Message) -> str:
    version = context.plan_version
    goal = version.content.find_goal(analysis.next_goal) if version else None
    goal_line = f"{goal.content} (Approach: {goal.approach})" if goal else "Continue with the current focus"
    return f"""{PromptTask.THERAPIST.header}

**Conversation State:** {context.current_state.value}
**Reply Language:** {analysis.language}
**Current Goal:** {goal_line}

**Therapeutic Plan Context:**
{format_plan_context(version)}

**Recent Conversation:**
{format_history(context.history)}

**Latest Message:** "{message.content}"

Reply as a warm, supportive therapist. Keep it conversational and under 150 words.

Return ONLY valid JSON:
{{
  "content": "reply to the user",
  "insights": ["observations about the user"],
  "suggestedTechniques": ["technique names"]
}}"""


def plan_revision_prompt(context: ConversationContext, version: PlanVersion, message: Message,
                         max_history: int) -> str:
    history = context.history[-max_history:]
    insight_lines = "\n".join(f"- {i}" for i in context.insights()) or "No specific insights recorded yet"
    return f"""{PromptTask.PLAN_REVISION.header}

**Key User Context:**
- Current State: {context.current_state.value}
- Recent Messages:
{format_history(history)}
- Latest Message: "{message.content}"
- Key Insights:
{insight_lines}
- Risk Profile: {format_risk(context.latest_risk)}

**Therapeutic Plan Context:**
{format_plan_context(version)}

**Current Goals:**
{format_goals(version)}

**Instructions:**
1. Update the plan to address immediate needs and long-term progress.
2. Keep every current goal unless it is achieved; list achieved goal identifiers in
   metrics.completedGoals.
3. Each goal needs a unique identifier, a conversation state and a concrete approach.

Return ONLY valid JSON:
{{
  "goals": [
    {{"codename": "unique_identifier", "state": "INFO_GATHERING|ACTIVE_GUIDANCE|PLAN_REVISION|EMERGENCY_INTERVENTION|SESSION_CLOSING",
      "content": "goal description", "approach": "how to respond", "conditions": "when it applies"}}
  ],
  "techniques": ["technique names"],
  "approach": "overall conversation approach",
  "focus": "current therapeutic focus",
  "riskFactors": ["identified risk factors"],
  "metrics": {{"completedGoals": ["achieved goal identifiers"], "progress": "assessment of progress"}}
}}"""


def emergency_prompt(risk: RiskAssessment, context: ConversationContext, message: Message, hotline: str) -> str:
    factors = ", ".join(risk.factors) or "unspecified"
    return f"""{PromptTask.EMERGENCY.header}

The user may be at immediate risk. Risk level {risk.level.value} (score {risk.score:.2f}),
factors: {factors}.

**Message:** "{message.content}"

**Recent Conversation:**
{format_history(context.history[-5:])}

Write a short, direct and warm reply that validates their feelings, focuses on immediate
safety and points to the crisis line {hotline}. Avoid platitudes.

Return ONLY valid JSON:
{{
  "content": "reply to the user",
  "requiredActions": ["actions to take now"],
  "safetyPlan": ["short safety plan steps"]
}}"""
