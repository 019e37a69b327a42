"""
Tests for system prompt rendering.
"""
from datetime import datetime, timezone

from kidcare.schemas.vector import VectorSearchResult
from kidcare.services.context_builder import ChatItem, ChildSummary, Context, RecordItem
from kidcare.services.prompt_formatter import (
    DEVELOPMENT_STAGE_DEFAULT,
    DEVELOPMENT_STAGES,
    PERSONA,
    RESPONSE_GUIDELINES,
    format_context_to_prompt,
    get_development_info,
)

WHEN = datetime(2026, 9, 1, 8, 30, tzinfo=timezone.utc)


def make_context(**kwargs) -> Context:
    child = ChildSummary(id=3, name="Mia", age_in_months=10, gender="FEMALE", allergy_info=["Milk"])
    return Context(user_id=1, child=child, **kwargs)


def result(i: int, similarity: float) -> VectorSearchResult:
    return VectorSearchResult(
        id=i,
        content=f"Snippet {i}\nsecond line",
        source_type="record",
        source_id=i,
        child_id=3,
        similarity=similarity,
    )


class TestDevelopmentInfo:
    """Tests for the age bucket blurbs."""

    def test_bucket_bounds_are_inclusive(self):
        """Nine months is still in the 7-9 bucket, ten is in the next one."""
        assert get_development_info(9) == DEVELOPMENT_STAGES[3][1]
        assert get_development_info(10) == DEVELOPMENT_STAGES[4][1]

    def test_newborn_and_school_age(self):
        assert get_development_info(0) == DEVELOPMENT_STAGES[0][1]
        assert get_development_info(61) == DEVELOPMENT_STAGE_DEFAULT


class TestFormatContextToPrompt:
    """Tests for format_context_to_prompt."""

    def test_deterministic(self):
        """The same context always renders the same prompt."""
        context = make_context(vector_search_results=[result(1, 0.8)])
        assert format_context_to_prompt(context) == format_context_to_prompt(context)

    def test_child_facts_and_allergy_constraint(self):
        prompt = format_context_to_prompt(make_context())

        assert prompt.startswith(PERSONA)
        assert "- The little one's name is Mia\n" in prompt
        assert "- Mia is 10 months old\n" in prompt
        assert "- Mia is a little girl\n" in prompt
        assert "[IMPORTANT] Mia is allergic to the following foods or substances: Milk" in prompt
        assert DEVELOPMENT_STAGES[4][1] in prompt

    def test_no_child(self):
        """Without a child only the persona and guidelines are rendered."""
        prompt = format_context_to_prompt(Context(user_id=1))
        assert "About the child" not in prompt
        assert "Response guidelines:" in prompt

    def test_top_five_snippets(self):
        """At most five snippets are shown, with relevance to one decimal."""
        results = [result(i, 0.9 - i / 100) for i in range(7)]
        prompt = format_context_to_prompt(make_context(vector_search_results=results))

        assert prompt.count("- Source: daily record") == 5
        assert "relevance: 90.0%" in prompt
        assert "Snippet 5" not in prompt
        assert "  Snippet 0\n  second line\n" in prompt

    def test_records_grouped_by_type_in_first_seen_order(self):
        records = [
            RecordItem(type="sleep", details={"duration": 60}, created_at=WHEN),
            RecordItem(type="feeding", details={"amount": 120}, created_at=WHEN),
            RecordItem(type="sleep", details={"duration": 30}, created_at=WHEN),
        ]
        prompt = format_context_to_prompt(make_context(relevant_records=records))

        assert prompt.index("- sleep records:") < prompt.index("- feeding records:")
        assert '  * 2026-09-01: {"duration": 30}\n' in prompt

    def test_at_most_three_conversations(self):
        chats = [
            ChatItem(user_message=f"Q{i}", ai_response=f"A{i}", created_at=WHEN) for i in range(5)
        ]
        prompt = format_context_to_prompt(make_context(relevant_chat_history=chats))

        assert "Parent: Q2" in prompt
        assert "Parent: Q3" not in prompt

    def test_guidelines_are_numbered(self):
        prompt = format_context_to_prompt(make_context())
        assert f"1. {RESPONSE_GUIDELINES[0]}\n" in prompt
        assert prompt.endswith(f"10. {RESPONSE_GUIDELINES[9]}\n")

    def test_unknown_gender_has_no_gender_line(self):
        context = Context(
            user_id=1,
            child=ChildSummary(id=3, name="Mia", age_in_months=10, gender=None),
        )
        prompt = format_context_to_prompt(context)
        assert "is a little" not in prompt
        assert "- Mia is 10 months old\n" in prompt
