"""
Two-phase tool calling for order and booking creation.

Phase 1 sends the conversation with tool schemas. When the model asks for
a tool, the first call is dispatched to the shop's commerce handler, the
result is appended as a tool turn, and phase 2 (without tool schemas) asks
the model to phrase the outcome. Every provider call is recorded in the
usage ledger.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple, Union

from shopbot_engine.storage.models import OperationType

from .conversation import (
    GenerationProvider,
    GenerationResult,
    RequestConfig,
    ToolCall,
    ToolSchema,
    Turn,
)
from .ledger import UsageLedger
from .resilience import ResilientInvoker

logger = logging.getLogger(__name__)


class ToolId(Enum):
    CREATE_ORDER = "create_order"
    CREATE_BOOKING = "create_booking"


@dataclass(frozen=True)
class OrderLine:
    product_name: str
    quantity: int


@dataclass(frozen=True)
class CreateOrderArgs:
    customer_name: str
    phone_number: str
    shipping_address: str
    products: Tuple[OrderLine, ...]
    payment_method: str

    @classmethod
    def from_arguments(cls, args: Dict[str, Any]) -> "CreateOrderArgs":
        """Validate raw model arguments.

        Raises:
            ValueError: If a required field is missing or malformed
        """
        products = args.get("products")
        if not isinstance(products, list) or not products:
            raise ValueError("products must be a non-empty list")
        lines = []
        for item in products:
            if not isinstance(item, dict):
                raise ValueError("each product must be an object")
            quantity = item.get("quantity")
            if isinstance(quantity, float) and quantity.is_integer():
                quantity = int(quantity)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValueError("quantity must be a positive integer")
            lines.append(OrderLine(_required_str(item, "productName"), quantity))

        return cls(
            customer_name=_required_str(args, "customerName"),
            phone_number=_required_str(args, "phoneNumber"),
            shipping_address=_required_str(args, "shippingAddress"),
            products=tuple(lines),
            payment_method=_required_str(args, "paymentMethod"),
        )


@dataclass(frozen=True)
class CreateBookingArgs:
    customer_name: str
    phone_number: str
    service_name: str
    appointment_date: str
    appointment_time: str

    @classmethod
    def from_arguments(cls, args: Dict[str, Any]) -> "CreateBookingArgs":
        return cls(
            customer_name=_required_str(args, "customerName"),
            phone_number=_required_str(args, "phoneNumber"),
            service_name=_required_str(args, "serviceName"),
            appointment_date=_required_str(args, "appointmentDate"),
            appointment_time=_required_str(args, "appointmentTime"),
        )


def _required_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} is required")
    return value.strip()


@dataclass(frozen=True)
class ToolResult:
    success: bool
    order_id: Optional[str] = None
    error: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.order_id is not None:
            payload["orderId"] = self.order_id
        if self.error is not None:
            payload["error"] = self.error
        return payload


class CommerceHandlers(Protocol):
    """Order and booking side-effect API of the shop backend."""

    async def create_order(
        self, shop_id: str, conversation_id: Optional[str], args: CreateOrderArgs
    ) -> ToolResult:
        ...

    async def create_booking(
        self, shop_id: str, conversation_id: Optional[str], args: CreateBookingArgs
    ) -> ToolResult:
        ...


ORDER_TOOL = ToolSchema(
    name="createConversationalOrder",
    description=(
        "Creates a customer order for physical products when all necessary information "
        "has been collected AND the user has explicitly confirmed the order details. "
        'Only use this for items with an itemType of "product".'
    ),
    parameters={
        "type": "object",
        "properties": {
            "customerName": {
                "type": "string",
                "description": "The full name of the customer placing the order.",
            },
            "phoneNumber": {
                "type": "string",
                "description": "The contact phone number for the customer.",
            },
            "shippingAddress": {
                "type": "string",
                "description": "The full shipping address, including street, city, and any other relevant details.",
            },
            "products": {
                "type": "array",
                "description": "An array of products the customer wants to order.",
                "items": {
                    "type": "object",
                    "properties": {
                        "productName": {
                            "type": "string",
                            "description": "The name of the product. Must match a product name from the provided item catalog.",
                        },
                        "quantity": {
                            "type": "integer",
                            "description": "The quantity of this product to order.",
                        },
                    },
                    "required": ["productName", "quantity"],
                },
            },
            "paymentMethod": {
                "type": "string",
                "description": (
                    "The payment method chosen by the customer. This must match one of the "
                    "payment methods from the 'Payment Methods' knowledge base section."
                ),
            },
        },
        "required": ["customerName", "phoneNumber", "shippingAddress", "products", "paymentMethod"],
    },
)

BOOKING_TOOL = ToolSchema(
    name="createBookingTool",
    description=(
        "Books a service for a customer when all necessary information has been collected "
        'and the user has confirmed the details. Only use this for items with an itemType of "service".'
    ),
    parameters={
        "type": "object",
        "properties": {
            "customerName": {"type": "string", "description": "The full name of the customer."},
            "phoneNumber": {"type": "string", "description": "The contact phone number for the customer."},
            "serviceName": {
                "type": "string",
                "description": "The name of the service to book. Must match a service from the item catalog.",
            },
            "appointmentDate": {
                "type": "string",
                "description": 'The requested date for the appointment (e.g., "Tomorrow", "July 25th", "2024-08-15").',
            },
            "appointmentTime": {
                "type": "string",
                "description": 'The requested time for the appointment (e.g., "around noon", "14:30").',
            },
        },
        "required": ["customerName", "phoneNumber", "serviceName", "appointmentDate", "appointmentTime"],
    },
)

COMMERCE_TOOLS: Tuple[ToolSchema, ...] = (ORDER_TOOL, BOOKING_TOOL)

# Provider-facing names are resolved once, here; everything past this
# boundary dispatches on ToolId.
TOOL_IDS_BY_NAME: Dict[str, ToolId] = {
    ORDER_TOOL.name: ToolId.CREATE_ORDER,
    BOOKING_TOOL.name: ToolId.CREATE_BOOKING,
}

ToolArgs = Union[CreateOrderArgs, CreateBookingArgs]


@dataclass(frozen=True)
class ToolBinding:
    parse: Callable[[Dict[str, Any]], ToolArgs]
    handler: Callable[[str, Optional[str], Any], Awaitable[ToolResult]]


def build_tool_registry(handlers: CommerceHandlers) -> Dict[ToolId, ToolBinding]:
    return {
        ToolId.CREATE_ORDER: ToolBinding(CreateOrderArgs.from_arguments, handlers.create_order),
        ToolId.CREATE_BOOKING: ToolBinding(CreateBookingArgs.from_arguments, handlers.create_booking),
    }


@dataclass(frozen=True)
class OrchestrationResult:
    text: str
    order_id: Optional[str] = None
    tool_id: Optional[ToolId] = None
    tool_result: Optional[ToolResult] = None
    provider_calls: int = 1
    follow_up_error: Optional[Exception] = None


@dataclass
class CallContext:
    """Per-turn identifiers and ledger metadata shared by both phases."""
    shop_id: str
    conversation_id: Optional[str]
    model_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    deadline: Optional[float] = None


class ToolCallOrchestrator:
    """Runs one chat turn, with at most one tool side effect and one follow-up call."""

    def __init__(
        self,
        provider: GenerationProvider,
        invoker: ResilientInvoker,
        ledger: UsageLedger,
        handlers: CommerceHandlers,
    ):
        self.provider = provider
        self.invoker = invoker
        self.ledger = ledger
        self.registry = build_tool_registry(handlers)

    async def _generate(
        self, ctx: CallContext, contents: Sequence[Turn], config: RequestConfig, phase: int
    ) -> GenerationResult:
        result = await self.invoker.invoke(
            lambda: self.provider.generate(ctx.model_name, contents, config),
            deadline=ctx.deadline,
        )
        if result.usage is not None:
            await asyncio.to_thread(
                self.ledger.record,
                shop_id=ctx.shop_id,
                conversation_id=ctx.conversation_id,
                operation_type=OperationType.CHAT_MESSAGE,
                model_name=ctx.model_name,
                usage=result.usage,
                metadata={**ctx.metadata, "phase": phase},
            )
        else:
            logger.warning(
                "Provider returned no usage metadata for shop %s (phase %d)", ctx.shop_id, phase
            )
        return result

    async def run(
        self, ctx: CallContext, contents: List[Turn], config: RequestConfig
    ) -> OrchestrationResult:
        """Run phase 1 and, when the model requests a tool, the side effect and phase 2.

        Args:
            ctx: Shop, conversation, model and ledger metadata for this turn
            contents: History plus the new user message
            config: Request config; its tools are offered in phase 1 only

        Returns:
            OrchestrationResult with the user-facing text and any created order id
        """
        first = await self._generate(ctx, contents, config, phase=1)
        if not first.has_tool_calls:
            return OrchestrationResult(text=first.text)

        call = first.tool_calls[0]
        if len(first.tool_calls) > 1:
            logger.warning(
                "Model requested %d tool calls for shop %s; only '%s' is executed",
                len(first.tool_calls), ctx.shop_id, call.name,
            )

        tool_id = TOOL_IDS_BY_NAME.get(call.name)
        if tool_id is None:
            logger.warning("Model requested unknown tool '%s' for shop %s", call.name, ctx.shop_id)
            return OrchestrationResult(text=first.text)

        tool_result = await self._dispatch(tool_id, call, ctx)

        extended = list(contents) + [
            Turn.model(first.text, [call]),
            Turn.tool_result(call, tool_result.as_payload()),
        ]
        try:
            second = await self._generate(ctx, extended, replace(config, tools=()), phase=2)
        except Exception as e:
            if not tool_result.success:
                raise
            # The side effect already happened; keep its order id.
            logger.error(
                "Follow-up call failed after %s succeeded for shop %s: %s",
                tool_id.value, ctx.shop_id, e,
            )
            return OrchestrationResult(
                text="",
                order_id=tool_result.order_id,
                tool_id=tool_id,
                tool_result=tool_result,
                provider_calls=2,
                follow_up_error=e,
            )

        if second.has_tool_calls:
            logger.warning(
                "Ignoring %d tool calls in follow-up response for shop %s",
                len(second.tool_calls), ctx.shop_id,
            )

        return OrchestrationResult(
            text=second.text,
            order_id=tool_result.order_id if tool_result.success else None,
            tool_id=tool_id,
            tool_result=tool_result,
            provider_calls=2,
        )

    async def _dispatch(self, tool_id: ToolId, call: ToolCall, ctx: CallContext) -> ToolResult:
        binding = self.registry[tool_id]
        try:
            args = binding.parse(call.arguments)
        except ValueError as e:
            logger.warning("Invalid arguments for %s from shop %s: %s", tool_id.value, ctx.shop_id, e)
            return ToolResult(success=False, error=f"Invalid arguments: {e}")

        try:
            result = await binding.handler(ctx.shop_id, ctx.conversation_id, args)
        except Exception as e:
            logger.exception("Tool handler %s failed for shop %s", tool_id.value, ctx.shop_id)
            return ToolResult(success=False, error=str(e) or type(e).__name__)

        if result.success:
            logger.info(
                "Tool %s succeeded for shop %s (order=%s)", tool_id.value, ctx.shop_id, result.order_id
            )
        else:
            logger.info("Tool %s failed for shop %s: %s", tool_id.value, ctx.shop_id, result.error)
        return result
