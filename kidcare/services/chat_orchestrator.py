"""
Chat orchestrator - context build, generation, safety filtering, persistence.

Two call shapes share one pipeline:
- ``chat``: synchronous, returns a ChatResult or raises.
- ``chat_stream``: a ChatStreamSession yielding ``content`` events followed by
  exactly one terminal ``done`` or ``error`` event.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from kidcare.core.exceptions import AppException, EmptyInputError, PersistenceError
from kidcare.services.allergy_checker import AllergyChecker
from kidcare.services.context_builder import (
    Context,
    ContextBuilder,
    calculate_age_in_months,
    summarize_context,
)
from kidcare.services.llm_client import ChatModel, build_messages
from kidcare.services.medical_checker import MedicalChecker
from kidcare.services.prompt_formatter import format_context_to_prompt

logger = logging.getLogger(__name__)


class ChatHistoryWriter(Protocol):
    async def create_chat_history(
        self,
        user_id: int,
        child_id: Optional[int],
        user_message: str,
        ai_response: str,
        raw_ai_response: str,
        context_summary: List[str],
        safety_flags: str,
        response_timestamp: Optional[datetime] = None,
    ) -> Any: ...

    async def get_user_chats(self, user_id: int, limit: int = 10, offset: int = 0) -> List[Any]: ...


# =============================================================================
# Fixed texts
# =============================================================================

ALLERGY_WARNING_TEMPLATE = (
    "\n\n[Allergy warning] Please note that the content above may carry an allergy risk "
    "related to {allergens}. If your child is allergic to these substances, please avoid contact."
)

# (upper bound in months, inclusive) -> guidance appended to the answer
AGE_GUIDANCE = [
    (3, "\n\n[0-3 months] Babies at this stage feed often, about 8-12 times a day. Make sure "
        "of a good holding position and plenty of skin contact. Watch for sleep cues and avoid "
        "overstimulation."),
    (6, "\n\n[4-6 months] Babies at this stage become more interested in their surroundings; "
        "gentle sensory play helps. Keep an eye on sleep patterns, a more regular routine may be "
        "needed."),
    (9, "\n\n[7-9 months] Babies at this stage usually start solid food; try single-ingredient "
        "purees. Watch how crawling and sitting develop and provide a safe space to explore."),
    (12, "\n\n[10-12 months] Babies at this stage may start standing and taking steps, so they "
         "need more room and safety measures. Offer more foods and textures and encourage "
         "self-feeding."),
    (18, "\n\n[13-18 months] Language starts to develop at this stage; talk with your toddler "
         "often and read simple picture books. Help them express emotions and learn simple rules."),
    (24, "\n\n[19-24 months] Toddlers become more independent and may go through a \"no\" phase; "
         "guide them patiently and set reasonable limits. Let them help with simple daily tasks "
         "such as dressing or tidying toys."),
    (36, "\n\n[25-36 months] Imagination blossoms at this stage, so pretend play works well. "
         "Language develops quickly and longer conversations are possible. Interest in potty "
         "training may begin."),
]
AGE_GUIDANCE_DEFAULT = (
    "\n\n[3 years and up] Social skills grow at this stage, so encourage play with other "
    "children. Thinking develops quickly and more complex learning activities are possible. "
    "Help build good habits and self-care skills."
)

NEW_USER_SUGGESTIONS = [
    "Hello and welcome to the AI parenting assistant! Add your child's details to get more personalised advice.",
    "Would you like to know how to add your child's profile?",
    "Would you like to know how to log daily activities such as feeding and sleep?",
    "Would you like to know how to use chat to get parenting advice?",
    "Would you like to know what kind of parenting help I can offer?",
]

GENERIC_SUGGESTIONS = [
    "How should I feed my baby?",
    "How can I build good sleep habits for my baby?",
    "How can I support my baby's language development?",
    "How do I soothe my baby when they cry?",
    "How can I tell whether my baby is developing well?",
]

FALLBACK_SUGGESTIONS = [
    "When should my baby start solid food?",
    "How do I handle my baby's separation anxiety?",
    "What milestones should my baby reach at this age?",
]

AGE_SPECIFIC_QUESTIONS = [
    (3, [
        "What are a newborn's sleep patterns like?",
        "How do I bathe a newborn safely?",
        "What should I know about breastfeeding?",
        "How can I tell if my baby is getting enough milk?",
        "What do different newborn cries mean?",
    ]),
    (6, [
        "How much should a 4-6 month old sleep?",
        "When is the right time to introduce solid food?",
        "How can I help my baby learn to roll over?",
        "Is drooling a sign of teething?",
        "How can I ease my baby's eczema?",
    ]),
    (9, [
        "Which solid foods suit a 7-9 month old?",
        "How can I help my baby learn to crawl?",
        "What if my baby refuses solid food?",
        "How do I handle separation anxiety?",
        "What are the signs of teething?",
    ]),
    (12, [
        "When will my baby start walking?",
        "What should a one-year-old eat?",
        "How can I encourage my baby's language skills?",
        "What if my baby refuses milk?",
        "How do I choose suitable toys?",
    ]),
    (18, [
        "How do I deal with picky eating?",
        "How can I calm my toddler's mood swings?",
        "How can I build a reading habit?",
        "What if my toddler's speech seems delayed?",
        "How do I teach my toddler to use a spoon?",
    ]),
    (24, [
        "How do I start potty training?",
        "My two-year-old always says \"no\", what should I do?",
        "How can I help my toddler's social skills?",
        "What if my toddler wakes up often at night?",
        "How can I encourage independence?",
    ]),
    (36, [
        "How do I handle tantrums?",
        "What if my child can't concentrate?",
        "How can I nurture creativity?",
        "What if my child is afraid of starting preschool?",
        "How do I teach colours and shapes?",
    ]),
]
AGE_SPECIFIC_QUESTIONS_DEFAULT = [
    "How can I build my child's reading habit?",
    "How do I deal with picky eating?",
    "How can I help my child become more self-reliant?",
    "What if my child spends too much time on screens?",
    "How can I communicate better with my child?",
]


def add_age_guidance(text: str, age_in_months: int) -> str:
    for upper_bound, guidance in AGE_GUIDANCE:
        if age_in_months <= upper_bound:
            return text + guidance
    return text + AGE_GUIDANCE_DEFAULT


def get_age_specific_questions(age_in_months: int) -> List[str]:
    for upper_bound, questions in AGE_SPECIFIC_QUESTIONS:
        if age_in_months <= upper_bound:
            return list(questions)
    return list(AGE_SPECIFIC_QUESTIONS_DEFAULT)


# =============================================================================
# Results and events
# =============================================================================

class StreamState(str, Enum):
    BUILDING_CONTEXT = "building_context"
    STREAMING_TOKENS = "streaming_tokens"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


@dataclass
class ChatResult:
    id: int
    response: str
    safety_flags: List[str] = field(default_factory=list)


@dataclass
class StreamEvent:
    type: str  # "content" | "done" | "error"
    content: Optional[str] = None
    chat_id: Optional[int] = None
    safety_flags: Optional[List[str]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in ("done", "error")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type}
        if self.content is not None:
            data["content"] = self.content
        if self.chat_id is not None:
            data["chatId"] = self.chat_id
        if self.safety_flags is not None:
            data["safetyFlags"] = self.safety_flags
        if self.error is not None:
            data["error"] = self.error
        return data


def _error_message(exc: Exception) -> str:
    return exc.message if isinstance(exc, AppException) else str(exc)


def _validate_message(message: str) -> None:
    if not message or not message.strip():
        raise EmptyInputError("Message must not be empty")


# =============================================================================
# Orchestrator
# =============================================================================

class ChatOrchestrator:
    def __init__(
        self,
        context_builder: ContextBuilder,
        chat_model: ChatModel,
        chat_history: ChatHistoryWriter,
        allergy_checker: AllergyChecker,
        medical_checker: MedicalChecker,
        on_chat_saved: Optional[Callable[[Any], None]] = None,
    ):
        self.context_builder = context_builder
        self.chat_model = chat_model
        self.chat_history = chat_history
        self.allergy_checker = allergy_checker
        self.medical_checker = medical_checker
        self.on_chat_saved = on_chat_saved

    async def chat(self, user_id: int, child_id: Optional[int], message: str) -> ChatResult:
        """
        Run one exchange synchronously.

        Raises:
            EmptyInputError: blank message, nothing else is done
            LLMProviderError: generation failed after retries
            PersistenceError: the exchange could not be saved
        """
        _validate_message(message)
        logger.info(f"Processing chat request for user {user_id}")

        context, messages, summary = await self._prepare(user_id, child_id, message)
        raw_response = await self.chat_model.generate(messages)
        return await self._finalize(user_id, message, raw_response, context, summary)

    def chat_stream(self, user_id: int, child_id: Optional[int], message: str) -> "ChatStreamSession":
        logger.info(f"Processing streaming chat request for user {user_id}")
        return ChatStreamSession(self, user_id, child_id, message)

    def apply_safety_checks(self, raw_response: str, allergens: List[str]) -> Tuple[str, List[str]]:
        """Annotate the answer and collect ``ALLERGY:`` / ``MEDICAL:`` flags."""
        flags: List[str] = []
        text = raw_response

        allergy = self.allergy_checker.check(raw_response, allergens)
        if allergy.has_potential_allergy:
            flags.append(f"ALLERGY:{','.join(allergy.allergens)}")
            text += ALLERGY_WARNING_TEMPLATE.format(allergens=", ".join(allergy.allergens))

        medical = self.medical_checker.check(raw_response)
        if medical.contains_medical_advice:
            flags.append(f"MEDICAL:{','.join(medical.medical_terms)}")
            text = self.medical_checker.add_disclaimer(text)

        return text, flags

    async def get_suggestions(self, user_id: int, child_id: Optional[int]) -> List[str]:
        """Question suggestions: onboarding, age-specific, generic, or a fixed fallback."""
        logger.info(f"Generating suggestions for user {user_id}")
        try:
            chats = await self.chat_history.get_user_chats(user_id, 1000, 0)
            if child_id:
                chats = [chat for chat in chats if chat.child_id == child_id]
            if not chats:
                logger.info(f"New user {user_id}, returning onboarding suggestions")
                return list(NEW_USER_SUGGESTIONS)

            if child_id:
                child = await self.context_builder.children.find_one(child_id, user_id)
                return get_age_specific_questions(calculate_age_in_months(child.date_of_birth))

            return list(GENERIC_SUGGESTIONS)
        except Exception as e:
            logger.error(f"Failed to generate suggestions: {e}")
            return list(FALLBACK_SUGGESTIONS)

    async def _prepare(
        self, user_id: int, child_id: Optional[int], message: str
    ) -> Tuple[Context, List[Dict], List[str]]:
        context = await self.context_builder.build_context(user_id, child_id, message)
        messages = build_messages(format_context_to_prompt(context), message)
        return context, messages, summarize_context(context)

    async def _finalize(
        self,
        user_id: int,
        message: str,
        raw_response: str,
        context: Context,
        summary: List[str],
    ) -> ChatResult:
        allergens = context.child.allergy_info if context.child else []
        response, flags = self.apply_safety_checks(raw_response, allergens)
        if context.child:
            response = add_age_guidance(response, context.child.age_in_months)

        try:
            chat = await self.chat_history.create_chat_history(
                user_id=user_id,
                child_id=context.child.id if context.child else None,
                user_message=message,
                ai_response=response,
                raw_ai_response=raw_response,
                context_summary=summary,
                safety_flags=",".join(flags),
                response_timestamp=datetime.now(timezone.utc),
            )
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to save chat history: {e}") from e

        if self.on_chat_saved is not None:
            try:
                self.on_chat_saved(chat)
            except Exception as e:
                logger.warning(f"Post-save hook failed for chat {chat.id}: {e}")

        return ChatResult(id=chat.id, response=response, safety_flags=flags)


class ChatStreamSession:
    """
    One streaming exchange.

    Iterate it for StreamEvents; ``state`` tracks the current stage. Closing
    the session (``aclose`` or abandoning iteration) closes the provider
    stream and nothing is persisted.
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        user_id: int,
        child_id: Optional[int],
        message: str,
    ):
        self.orchestrator = orchestrator
        self.user_id = user_id
        self.child_id = child_id
        self.message = message
        self.state = StreamState.BUILDING_CONTEXT
        self._events = self._run()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self

    async def __anext__(self) -> StreamEvent:
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()

    def _fail(self, message: str) -> StreamEvent:
        self.state = StreamState.ERROR
        logger.error(message)
        return StreamEvent(type="error", error=message)

    async def _run(self) -> AsyncIterator[StreamEvent]:
        orchestrator = self.orchestrator

        try:
            _validate_message(self.message)
            context, messages, summary = await orchestrator._prepare(
                self.user_id, self.child_id, self.message
            )
        except Exception as e:
            yield self._fail(f"Failed to build context: {_error_message(e)}")
            return

        self.state = StreamState.STREAMING_TOKENS
        chunks: List[str] = []
        stream = orchestrator.chat_model.stream_generate(messages)
        try:
            async for token in stream:
                chunks.append(token)
                yield StreamEvent(type="content", content=token)
        except Exception as e:
            yield self._fail(f"Failed to generate response: {_error_message(e)}")
            return
        finally:
            await stream.aclose()

        self.state = StreamState.FINALIZING
        try:
            result = await orchestrator._finalize(
                self.user_id, self.message, "".join(chunks), context, summary
            )
        except Exception as e:
            yield self._fail(f"Failed to finalize response: {_error_message(e)}")
            return

        self.state = StreamState.DONE
        yield StreamEvent(type="done", chat_id=result.id, safety_flags=result.safety_flags)
