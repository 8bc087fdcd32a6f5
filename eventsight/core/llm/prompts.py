# eventsight/core/llm/prompts.py
"""
Prompt templates (Jinja2).

Each ``render_*`` helper fills one template. Templates are module-level so
tests can render them without an LLM.
"""

from typing import Any, Dict, Iterable, List, Optional

from jinja2 import Template

ANALYTICS_SYSTEM_PROMPT = (
    "You are an analytics assistant for an e-commerce behavioral analytics platform. "
    "Answer only questions about user behavior, events, segments and engagement. "
    "Politely decline anything unrelated to analytics."
)

USER_SUMMARY_TEMPLATE = Template(
    """You are an AI data analyst. Analyze the following PostHog user activity and produce
a clean structured metadata object and a concise behavioral summary describing the
user's app usage, habits and intent.

**User ID:** {{ person_id }}

**User activity:**
{{ activity }}

Extract behavioral signals such as sessionCount, totalEventCount, activeDays,
primaryDevice, osVersion, cartActivity (none | added | cleared | abandoned),
location, firstSeen, lastSeen, recentActivity, highIntentSignals, churnRisk and
conversionLikely. Add any other field that would help answer questions like
"which users explored but did not buy?".

Return only this JSON:

```json
{
  "person_id": "{{ person_id }}",
  "metadata": { "sessionCount": 3, "totalEventCount": 48, "cartActivity": "added" },
  "summary": "At most 40 words describing this user's activity."
}
```
"""
)

DATA_ANALYSIS_TEMPLATE = Template(
    """You analyze user behavior summarized from PostHog event logs. Find the users
**most likely to convert** (purchase or complete an important funnel step).

### Question
{{ question }}

### Context
{{ context }}

### Instructions
1. Rank at most {{ top_n }} users by shopping intent: cart updates, checkout starts,
   product views, repeat sessions.
2. If confidence is low for a user, say why.
3. Mention that {{ total }} matching users were found in total.
4. Answer in plain prose, one short paragraph per ranked user (person id, reason,
   confidence between 0 and 1).
"""
)

INTENT_DETECTION_TEMPLATE = Template(
    """Classify the analytics question below into exactly one intent.

Intents:
{% for name, description in intents %}- {{ name }}: {{ description }}
{% endfor %}
Parameters you may extract:
- filters: flat map of profile field to value, list, or range
  (fields: person_id, event_count, event_types, vendor_ids, shop_domains,
  time_range {start, end}, event_count_range {min, max},
  flattened_data.<property>, person_properties.<trait>)
- question_type: "count" or "list"
- search_query: short phrase to search profiles with
- country, city: for find_users_by_location
- batch_size: integer, for ingest_events

Question: {{ question }}

Respond with only a JSON object:
{"intent": "<intent>", "confidence": 0.0-1.0, "parameters": {...}, "method": "<short rationale>"}
"""
)

COUNT_ANSWER_TEMPLATE = Template(
    """Question: {{ question }}

{{ count }} distinct users match this question.
{% if sample %}Sample of matching profiles:
{{ sample }}
{% endif %}
Write one or two sentences answering the question. State the number {{ count }} explicitly."""
)

LIST_ANSWER_TEMPLATE = Template(
    """Question: {{ question }}

{{ total }} users matched. Representative profiles:
{{ profiles }}

Write a short natural-language answer. Mention that {{ total }} users matched,
describe what the representative users have in common, and do not list raw ids."""
)

RAG_ANSWER_TEMPLATE = Template(
    """Answer the analytics question using only the user profiles below.

Question: {{ question }}

Profiles ({{ total }} retrieved):
{{ profiles }}

If the profiles do not contain the answer, say so."""
)

IMPROVE_CACHED_ANSWER_TEMPLATE = Template(
    """A previous answer to a very similar analytics question is below. Rephrase it so it
reads as a direct answer to the new question. Do not add facts.

New question: {{ question }}
Previous question: {{ cached_question }}
Previous answer: {{ answer }}"""
)


def render_user_summary_prompt(person_id: str, activity: str) -> str:
    return USER_SUMMARY_TEMPLATE.render(person_id=person_id, activity=activity)


def render_data_analysis_prompt(question: str, context: str, total: int, top_n: int = 3) -> str:
    return DATA_ANALYSIS_TEMPLATE.render(question=question, context=context, total=total, top_n=top_n)


def render_intent_prompt(question: str, intents: Iterable) -> str:
    return INTENT_DETECTION_TEMPLATE.render(question=question, intents=list(intents))


def render_count_prompt(question: str, count: int, sample: str = "") -> str:
    return COUNT_ANSWER_TEMPLATE.render(question=question, count=count, sample=sample)


def render_list_prompt(question: str, total: int, profiles: str) -> str:
    return LIST_ANSWER_TEMPLATE.render(question=question, total=total, profiles=profiles)


def render_rag_prompt(question: str, total: int, profiles: str) -> str:
    return RAG_ANSWER_TEMPLATE.render(question=question, total=total, profiles=profiles)


def render_improve_prompt(question: str, cached_question: str, answer: str) -> str:
    return IMPROVE_CACHED_ANSWER_TEMPLATE.render(
        question=question, cached_question=cached_question, answer=answer
    )


def format_profiles(profiles: List[Dict[str, Any]], summary_chars: Optional[int] = 600) -> str:
    """Render profile payloads as numbered ``User Profile N`` blocks."""
    blocks = []
    for index, profile in enumerate(profiles, start=1):
        summary = profile.get("summary") or ""
        if summary_chars and len(summary) > summary_chars:
            summary = summary[:summary_chars] + "..."
        blocks.append(
            "\n".join(
                [
                    f"User Profile {index}:",
                    f"  person_id: {profile.get('person_id')}",
                    f"  event_count: {profile.get('event_count')}",
                    f"  event_types: {', '.join(profile.get('event_types') or [])}",
                    f"  vendors: {', '.join(profile.get('vendor_ids') or [])}",
                    f"  active: {profile.get('first_event')} to {profile.get('last_event')} ({profile.get('time_span')})",
                    f"  summary: {summary}",
                ]
            )
        )
    return "\n\n".join(blocks)
