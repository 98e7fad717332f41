"""
Conversational response engine.

Pipeline for one inbound customer message:
1. Resolve sales strategy and commerce mode (no provider I/O)
2. Budget admission, then cost optimization
3. Compose the layered system prompt
4. Call the provider through the resilient invoker, running the tool
   protocol when autonomous commerce is on
5. Record every completed provider call in the usage ledger

Budget and quota exhaustion, tool failures and provider outages come back
as a ChatResponse outcome; only configuration faults are raised.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from shopbot_engine.config.loader import EngineConfig
from shopbot_engine.storage.models import OperationType
from shopbot_engine.storage.repository import (
    BudgetRepository,
    CommerceUsageRepository,
    LedgerRepository,
    initialize_schema,
)

from .budget import AdmissionDecision, BudgetGovernor, BudgetStatus
from .commerce import CommerceGate, CommerceMode
from .conversation import (
    GenerationProvider,
    GenerationResult,
    RequestConfig,
    Turn,
    parse_structured_response,
)
from .errors import BudgetExceededError, CircuitOpenError, ConfigurationError
from .ledger import UsageLedger
from .prompt import PromptInputs, compose_system_prompt
from .resilience import ResilientInvoker, default_should_retry
from .shop import KnowledgeBase, PaymentMethod, ShopAIProfile, ShopConfigReader
from .strategy import resolve_strategy
from .tools import COMMERCE_TOOLS, CallContext, CommerceHandlers, ToolCallOrchestrator

logger = logging.getLogger(__name__)

PROVIDER_FAILED_TEXT = (
    "Sorry, I'm having trouble answering right now. Please try again in a moment."
)
SERVICE_UNAVAILABLE_TEXT = (
    "Our assistant is temporarily unavailable. Please try again in a few minutes."
)
ORDER_CREATED_TEXT = (
    "Your order {order_id} has been created. We'll be in touch shortly with the next steps."
)
EMPTY_REPLY_TEXT = (
    "Sorry, I didn't quite catch that. Could you say it another way?"
)

DESCRIPTION_RESPONSE_FORMAT = (
    'Respond with a JSON object with two string fields: "description", a structured '
    "product description of at most {limit} characters, and \"facebookSubtitle\", a short "
    "subtitle for Facebook of at most 80 characters including a price placeholder like '[Price]'."
)


class ResponseOutcome(Enum):
    ANSWERED = "answered"
    BUDGET_EXCEEDED = "budget_exceeded"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVICE_UNAVAILABLE = "service_unavailable"
    PROVIDER_FAILED = "provider_failed"


@dataclass(frozen=True)
class ChatResponse:
    text: str
    order_id: Optional[str] = None
    outcome: ResponseOutcome = ResponseOutcome.ANSWERED
    model_name: Optional[str] = None


@dataclass(frozen=True)
class ProductDescriptions:
    description: str
    facebook_subtitle: str


class ResponseEngine:
    """Entry point for customer replies and the other provider-backed operations."""

    def __init__(
        self,
        config: EngineConfig,
        provider: GenerationProvider,
        shop_reader: ShopConfigReader,
        handlers: CommerceHandlers,
        governor: BudgetGovernor,
        ledger: UsageLedger,
        commerce_usage: CommerceUsageRepository,
        invoker: ResilientInvoker,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config
        self.provider = provider
        self.shop_reader = shop_reader
        self.governor = governor
        self.ledger = ledger
        self.commerce_usage = commerce_usage
        self.invoker = invoker
        self.clock = clock
        self.gate = CommerceGate(config.commerce)
        self.orchestrator = ToolCallOrchestrator(provider, invoker, ledger, handlers)

    def _request_config(self, **overrides: Any) -> RequestConfig:
        gen = self.config.generation
        settings: Dict[str, Any] = dict(
            temperature=gen.temperature,
            top_p=gen.top_p,
            top_k=gen.top_k,
            timeout=gen.request_timeout,
        )
        settings.update(overrides)
        return RequestConfig(**settings)

    async def generate_response(
        self,
        shop_id: str,
        conversation_id: Optional[str],
        history: Sequence[Turn],
        new_message: str,
        profile: ShopAIProfile,
        knowledge: KnowledgeBase,
        language: str,
        tone: str,
        payment_methods: List[PaymentMethod],
        user_name: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> ChatResponse:
        """Produce the assistant's reply to one customer message.

        Args:
            shop_id: Shop the conversation belongs to
            conversation_id: Conversation id for ledger entries and handlers
            history: Prior turns, oldest first
            new_message: The customer's new message
            profile: The shop's assistant profile
            knowledge: The shop's knowledge base
            language: Primary response language code
            tone: Assistant tone key
            payment_methods: Shop payment methods
            user_name: Customer's first name, when known
            deadline: Optional absolute time.monotonic() deadline for provider calls

        Returns:
            ChatResponse; order_id is set when an order or booking was created

        Raises:
            ConfigurationError: If the provider cannot be used at all
        """
        shop = await self.shop_reader.get_shop(shop_id)
        strategy = resolve_strategy(
            shop.order_flow_enabled, shop.booking_flow_enabled, knowledge.has_physical_locations
        )

        now = self.clock()
        usage = await asyncio.to_thread(self.commerce_usage.get_or_create, shop_id, now)
        commerce = self.gate.evaluate(shop.plan_id, usage, now)
        if commerce.mode == CommerceMode.QUOTA_EXCEEDED:
            return ChatResponse(text=commerce.message, outcome=ResponseOutcome.QUOTA_EXCEEDED)

        admission = await self.governor.admit(shop_id)
        if not admission.allowed:
            return ChatResponse(text=admission.reason, outcome=ResponseOutcome.BUDGET_EXCEEDED)

        try:
            model_name = self.config.models.model_for_tier(profile.model_tier)
            optimization = await asyncio.to_thread(
                self.governor.optimize, shop_id, model_name, len(history)
            )
            model_name = optimization.model_name
            trimmed = optimization.trim_history(list(history))
            if len(trimmed) < len(history):
                logger.info(
                    "Reduced history for shop %s from %d to %d turns",
                    shop_id, len(history), len(trimmed),
                )

            prompt = compose_system_prompt(
                PromptInputs(
                    strategy=strategy,
                    commerce_mode=commerce.mode,
                    persona=profile.persona,
                    language=language,
                    tone=tone,
                    knowledge=knowledge,
                    payment_methods=payment_methods,
                    user_name=user_name,
                ),
                self.config.prompt,
            )
            request = self._request_config(
                system_instruction=prompt.system_instruction,
                tools=COMMERCE_TOOLS if prompt.tools_enabled else (),
            )
            ctx = CallContext(
                shop_id=shop_id,
                conversation_id=conversation_id,
                model_name=model_name,
                metadata={
                    "message_length": len(new_message),
                    "history_length": len(trimmed),
                    "knowledge_size": prompt.knowledge_size,
                },
                deadline=deadline,
            )
            return await self._converse(ctx, trimmed + [Turn.user(new_message)], request)
        finally:
            self.governor.release(admission)

    async def _converse(
        self, ctx: CallContext, contents: List[Turn], request: RequestConfig
    ) -> ChatResponse:
        try:
            result = await self.orchestrator.run(ctx, contents, request)
        except ConfigurationError:
            raise
        except CircuitOpenError as e:
            logger.warning("Provider unavailable for shop %s: %s", ctx.shop_id, e)
            return ChatResponse(
                text=SERVICE_UNAVAILABLE_TEXT,
                outcome=ResponseOutcome.SERVICE_UNAVAILABLE,
                model_name=ctx.model_name,
            )
        except Exception:
            logger.exception("Provider call failed for shop %s", ctx.shop_id)
            return ChatResponse(
                text=PROVIDER_FAILED_TEXT,
                outcome=ResponseOutcome.PROVIDER_FAILED,
                model_name=ctx.model_name,
            )

        if result.tool_result is not None and result.tool_result.success:
            usage = await asyncio.to_thread(
                self.commerce_usage.increment, ctx.shop_id, self.clock()
            )
            logger.info(
                "Commerce usage for shop %s is now %d this cycle", ctx.shop_id, usage.count
            )

        text = result.text
        if result.follow_up_error is not None:
            text = ORDER_CREATED_TEXT.format(order_id=result.order_id)
        elif not text.strip():
            logger.warning("Model returned no reply text for shop %s", ctx.shop_id)
            if result.order_id is not None:
                text = ORDER_CREATED_TEXT.format(order_id=result.order_id)
            else:
                text = EMPTY_REPLY_TEXT
        return ChatResponse(text=text, order_id=result.order_id, model_name=ctx.model_name)

    async def _admit_or_raise(self, shop_id: str) -> AdmissionDecision:
        admission = await self.governor.admit(shop_id)
        if not admission.allowed:
            raise BudgetExceededError(shop_id, admission.reason)
        return admission

    async def _single_call(
        self,
        shop_id: str,
        operation_type: OperationType,
        model_name: str,
        contents: List[Turn],
        request: RequestConfig,
        metadata: Dict[str, Any],
        deadline: Optional[float],
    ) -> GenerationResult:
        admission = await self._admit_or_raise(shop_id)
        try:
            result = await self.invoker.invoke(
                lambda: self.provider.generate(model_name, contents, request), deadline=deadline
            )
        finally:
            self.governor.release(admission)

        if result.usage is not None:
            await asyncio.to_thread(
                self.ledger.record,
                shop_id=shop_id,
                operation_type=operation_type,
                model_name=model_name,
                usage=result.usage,
                metadata=metadata,
            )
        return result

    async def generate_product_descriptions(
        self,
        shop_id: str,
        prompt: str,
        character_limit: int,
        deadline: Optional[float] = None,
    ) -> ProductDescriptions:
        """Generate a catalog description and a Facebook subtitle as JSON.

        Raises:
            BudgetExceededError: If budget admission rejects the request
            StructuredResponseError: If the reply is not parsable JSON
        """
        model_name = self.config.models.description_model
        request = self._request_config(
            system_instruction=DESCRIPTION_RESPONSE_FORMAT.format(limit=character_limit),
            json_response=True,
        )
        result = await self._single_call(
            shop_id,
            OperationType.PRODUCT_DESCRIPTION,
            model_name,
            [Turn.user(prompt)],
            request,
            {"message_length": len(prompt)},
            deadline,
        )
        data = parse_structured_response(result.text)
        return ProductDescriptions(
            description=str(data.get("description") or ""),
            facebook_subtitle=str(data.get("facebookSubtitle") or ""),
        )

    async def generate_suggestion(
        self,
        prompt: str,
        system_instruction: str,
        shop_id: str = "admin",
        deadline: Optional[float] = None,
    ) -> str:
        """Free-form suggestion text for the admin console."""
        model_name = self.config.models.suggestion_model
        result = await self._single_call(
            shop_id,
            OperationType.SUGGESTION,
            model_name,
            [Turn.user(prompt)],
            self._request_config(system_instruction=system_instruction),
            {"message_length": len(prompt)},
            deadline,
        )
        return result.text

    async def edit_product_image(
        self,
        shop_id: str,
        image: bytes,
        mime_type: str,
        prompt: str,
        deadline: Optional[float] = None,
    ) -> str:
        """Edit a product photo; returns the result as a data URL."""
        model_name = self.config.models.image_model
        admission = await self._admit_or_raise(shop_id)
        try:
            result = await self.invoker.invoke(
                lambda: self.provider.edit_image(model_name, image, mime_type, prompt),
                deadline=deadline,
            )
        finally:
            self.governor.release(admission)

        if result.usage is not None:
            await asyncio.to_thread(
                self.ledger.record,
                shop_id=shop_id,
                operation_type=OperationType.PHOTO_STUDIO,
                model_name=model_name,
                usage=result.usage,
                metadata={"message_length": len(prompt)},
            )
        return result.data_url

    def budget_status(self, shop_id: str) -> BudgetStatus:
        return self.governor.status(shop_id)

    def export_ledger(
        self,
        shop_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        return self.ledger.export_rows(shop_id, start, end)

    def clear_ledger(self, shop_id: Optional[str] = None) -> int:
        return self.ledger.clear(shop_id)


def build_engine(
    config: EngineConfig,
    provider: GenerationProvider,
    shop_reader: ShopConfigReader,
    handlers: CommerceHandlers,
    should_retry: Callable[[BaseException], bool] = default_should_retry,
    db_path: Optional[str] = None,
) -> ResponseEngine:
    """Wire repositories, governor, ledger and invoker into a ResponseEngine.

    Creates the database schema if needed. One engine (and so one circuit
    breaker) should be shared by every shop served by a process.
    """
    db_path = db_path or config.storage.db_path
    initialize_schema(db_path)

    governor = BudgetGovernor(BudgetRepository(db_path), config.budget, config.optimization)
    ledger = UsageLedger(LedgerRepository(db_path), governor, config.token_limits)
    invoker = ResilientInvoker.from_config(
        config.retry, config.circuit_breaker, should_retry=should_retry
    )
    return ResponseEngine(
        config=config,
        provider=provider,
        shop_reader=shop_reader,
        handlers=handlers,
        governor=governor,
        ledger=ledger,
        commerce_usage=CommerceUsageRepository(db_path),
        invoker=invoker,
    )
