"""
System prompt rendering.

``format_context_to_prompt`` is a pure function of the Context: the same
input always renders the same text.
"""
import json
from datetime import date, datetime
from typing import Any, Dict, List

from kidcare.services.context_builder import Context, RecordItem

MAX_VECTOR_SNIPPETS = 5
MAX_CONVERSATIONS = 3

CHILD_NOUNS = {"MALE": "boy", "FEMALE": "girl"}

PERSONA = (
    "You are a kind, warm and professional parenting assistant. Your goal is to give "
    "parents support and practical parenting advice. Use the information below to give "
    "a personalised answer in a warm, empathetic tone:\n\n"
    "You are talking with a parent who cares about their child's growth.\n\n"
)

# (upper bound in months, inclusive) -> milestone blurb
DEVELOPMENT_STAGES = [
    (1, "At this age the baby is adapting to life outside the womb: reflexes, reacting to "
        "sounds and faces, and communicating through sucking and crying"),
    (3, "At this age the baby starts lifting their head, smiling, cooing and showing more "
        "interest in their surroundings"),
    (6, "At this age the baby may start rolling over, sitting with support, grabbing objects "
        "and showing interest in solid food"),
    (9, "At this age the baby may start crawling, sitting unaided, playing simple response "
        "games such as clapping and babbling simple syllables"),
    (12, "At this age the baby may start pulling to stand, trying to walk, imitating simple "
         "actions and sounds, and understanding simple instructions"),
    (18, "At this age the toddler may start walking independently, saying simple words, using "
         "simple tools such as a spoon and showing more independence"),
    (24, "At this age the toddler may start running, saying short sentences, learning simple "
         "concepts such as size and colour and expressing more emotions"),
    (36, "At this age the toddler may start forming more complex sentences, joining simple "
         "pretend play, showing basic social skills and possibly starting potty training"),
    (48, "At this age the child may start jumping, catching a ball, talking in full sentences, "
         "describing experiences and showing richer imagination"),
    (60, "At this age the child may start learning letters and numbers, telling detailed "
         "stories, joining more complex games and showing more self-care skills"),
]
DEVELOPMENT_STAGE_DEFAULT = (
    "Children of this age are developing more complex cognitive, language, social and motor "
    "skills as they get ready for school"
)

SOURCE_TYPE_DESCRIPTIONS = {
    "child_profile": "child profile",
    "record": "daily record",
    "chat_history": "chat history",
}

RESPONSE_GUIDELINES = [
    "Reply in a warm, friendly tone, as if talking with a friend, and avoid stiff or preachy language",
    "Give scientific, professional parenting advice, but explain it in plain words",
    "Acknowledge the parent's stress and worries and show empathy and support",
    "Tailor development and feeding advice to the child's age in months",
    "Take special care never to suggest foods that could trigger the child's allergies",
    "Do not give specific medical diagnoses or medication advice; suggest seeing a doctor when needed",
    "Keep answers short and clear, without long theoretical explanations",
    "Encourage and reassure the parent where appropriate to build their confidence",
    "If you are not sure about an answer, say so instead of giving inaccurate information",
    "Prefer the retrieved information above when answering, while keeping the answer natural and coherent",
]


def get_development_info(age_in_months: int) -> str:
    """Milestone blurb for the bucket whose inclusive upper bound covers the age."""
    for upper_bound, blurb in DEVELOPMENT_STAGES:
        if age_in_months <= upper_bound:
            return blurb
    return DEVELOPMENT_STAGE_DEFAULT


def get_source_type_description(source_type: str) -> str:
    return SOURCE_TYPE_DESCRIPTIONS.get(source_type, source_type)


def _format_date(value: Any) -> str:
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _group_records_by_type(records: List[RecordItem]) -> Dict[str, List[RecordItem]]:
    grouped: Dict[str, List[RecordItem]] = {}
    for record in records:
        grouped.setdefault(record.type, []).append(record)
    return grouped


def format_context_to_prompt(context: Context) -> str:
    parts: List[str] = [PERSONA]

    child = context.child
    if child:
        parts.append("About the child:\n")
        parts.append(f"- The little one's name is {child.name}\n")
        parts.append(f"- {child.name} is {child.age_in_months} months old\n")
        if child.gender in CHILD_NOUNS:
            parts.append(f"- {child.name} is a little {CHILD_NOUNS[child.gender]}\n")
        if child.allergy_info:
            parts.append(
                f"- [IMPORTANT] {child.name} is allergic to the following foods or substances: "
                f"{', '.join(child.allergy_info)}\n"
            )
            parts.append(
                "- You must avoid suggesting any food or product that contains these allergens\n"
            )
        parts.append(f"- {get_development_info(child.age_in_months)}\n")
        parts.append("\n")

    if context.vector_search_results:
        parts.append("Relevant information retrieved for this question (sorted by relevance):\n")
        for result in context.vector_search_results[:MAX_VECTOR_SNIPPETS]:
            parts.append(
                f"- Source: {get_source_type_description(result.source_type)}, "
                f"relevance: {result.similarity * 100:.1f}%\n"
            )
            indented = result.content.replace("\n", "\n  ")
            parts.append(f"  {indented}\n\n")

    if context.relevant_records:
        parts.append("Related daily records:\n")
        for record_type, records in _group_records_by_type(context.relevant_records).items():
            parts.append(f"- {record_type} records:\n")
            for record in records:
                details = json.dumps(record.details, ensure_ascii=False, default=str)
                parts.append(f"  * {_format_date(record.created_at)}: {details}\n")
        parts.append("\n")

    if context.relevant_chat_history:
        parts.append("Related conversations:\n")
        for chat in context.relevant_chat_history[:MAX_CONVERSATIONS]:
            parts.append(f"- {_format_date(chat.created_at)}\n")
            parts.append(f"  Parent: {chat.user_message}\n")
            parts.append(f"  Assistant: {chat.ai_response}\n")
        parts.append("\n")

    parts.append("Response guidelines:\n")
    for i, guideline in enumerate(RESPONSE_GUIDELINES, start=1):
        parts.append(f"{i}. {guideline}\n")

    return "".join(parts)
