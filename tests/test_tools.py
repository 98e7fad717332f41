"""
Unit tests for tool argument validation and the two-phase tool protocol.
"""

import logging
import os
import tempfile

import pytest

from shopbot_engine.config.loader import BudgetConfig, OptimizationConfig
from shopbot_engine.core.budget import BudgetGovernor
from shopbot_engine.core.conversation import GenerationResult, RequestConfig, Role, ToolCall, Turn
from shopbot_engine.core.ledger import UsageLedger
from shopbot_engine.core.resilience import CircuitBreaker, ResilientInvoker, RetryPolicy
from shopbot_engine.core.token_counter import TokenUsage
from shopbot_engine.core.tools import (
    COMMERCE_TOOLS,
    CallContext,
    CreateBookingArgs,
    CreateOrderArgs,
    OrderLine,
    ToolCallOrchestrator,
    ToolId,
    ToolResult,
)
from shopbot_engine.storage.models import OperationType
from shopbot_engine.storage.repository import BudgetRepository, LedgerRepository, initialize_schema

ORDER_ARGS = {
    "customerName": "Aung Aung",
    "phoneNumber": "09-111",
    "shippingAddress": "12 Pagoda Rd, Yangon",
    "products": [{"productName": "Green Tea", "quantity": 2}],
    "paymentMethod": "KBZPay",
}

BOOKING_ARGS = {
    "customerName": "Su Su",
    "phoneNumber": "09-222",
    "serviceName": "Facial",
    "appointmentDate": "2024-08-15",
    "appointmentTime": "14:30",
}

USAGE = TokenUsage(input_tokens=1200, output_tokens=80)


class ScriptedProvider:
    """Returns queued results (or raises queued exceptions) and records each request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def generate(self, model, contents, config):
        self.requests.append((model, list(contents), config))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingHandlers:
    def __init__(self, order_result=None, booking_result=None, error=None):
        self.order_result = order_result or ToolResult(success=True, order_id="ORD-1001")
        self.booking_result = booking_result or ToolResult(success=True, order_id="BKG-7")
        self.error = error
        self.calls = []

    async def create_order(self, shop_id, conversation_id, args):
        self.calls.append(("order", shop_id, conversation_id, args))
        if self.error:
            raise self.error
        return self.order_result

    async def create_booking(self, shop_id, conversation_id, args):
        self.calls.append(("booking", shop_id, conversation_id, args))
        if self.error:
            raise self.error
        return self.booking_result


class TestToolArguments:
    """Argument validation at the tool boundary."""

    def test_order_args(self):
        args = CreateOrderArgs.from_arguments(ORDER_ARGS)
        assert args.customer_name == "Aung Aung"
        assert args.products == (OrderLine("Green Tea", 2),)
        assert args.payment_method == "KBZPay"

    def test_integral_float_quantity_accepted(self):
        data = dict(ORDER_ARGS, products=[{"productName": "Tea", "quantity": 3.0}])
        assert CreateOrderArgs.from_arguments(data).products[0].quantity == 3

    @pytest.mark.parametrize("products,message", [
        ([], "products must be a non-empty list"),
        (None, "products must be a non-empty list"),
        (["Tea"], "each product must be an object"),
        ([{"productName": "Tea", "quantity": 0}], "quantity must be a positive integer"),
        ([{"productName": "Tea", "quantity": 1.5}], "quantity must be a positive integer"),
        ([{"productName": "Tea", "quantity": True}], "quantity must be a positive integer"),
        ([{"quantity": 1}], "productName is required"),
    ])
    def test_invalid_products(self, products, message):
        with pytest.raises(ValueError, match=message):
            CreateOrderArgs.from_arguments(dict(ORDER_ARGS, products=products))

    def test_blank_required_field(self):
        with pytest.raises(ValueError, match="phoneNumber is required"):
            CreateOrderArgs.from_arguments(dict(ORDER_ARGS, phoneNumber="  "))

    def test_booking_args(self):
        args = CreateBookingArgs.from_arguments(BOOKING_ARGS)
        assert args.service_name == "Facial"
        assert args.appointment_time == "14:30"
        with pytest.raises(ValueError, match="appointmentDate is required"):
            CreateBookingArgs.from_arguments(dict(BOOKING_ARGS, appointmentDate=None))

    def test_tool_result_payload(self):
        assert ToolResult(success=True, order_id="X").as_payload() == {"success": True, "orderId": "X"}
        assert ToolResult(success=False, error="boom").as_payload() == {"success": False, "error": "boom"}


class TestToolCallOrchestrator:
    """Two-phase protocol: at most one side effect and one follow-up call."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        governor = BudgetGovernor(BudgetRepository(self.db_path), BudgetConfig(), OptimizationConfig())
        self.ledger_repo = LedgerRepository(self.db_path)
        self.ledger = UsageLedger(self.ledger_repo, governor)

        async def no_sleep(delay):
            pass

        self.invoker = ResilientInvoker(RetryPolicy(max_retries=0), CircuitBreaker(), sleep=no_sleep)
        self.ctx = CallContext(
            shop_id="s1", conversation_id="c1", model_name="gpt-4o", metadata={"history_length": 2}
        )
        self.config = RequestConfig(system_instruction="sys", tools=COMMERCE_TOOLS)
        self.contents = [Turn.user("I want 2 green teas")]

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _orchestrator(self, provider, handlers=None):
        self.handlers = handlers or RecordingHandlers()
        return ToolCallOrchestrator(provider, self.invoker, self.ledger, self.handlers)

    @pytest.mark.asyncio
    async def test_plain_answer_single_call(self):
        provider = ScriptedProvider(GenerationResult(text="We open at 9.", usage=USAGE))
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)

        assert result.text == "We open at 9."
        assert result.order_id is None
        assert result.provider_calls == 1
        assert self.handlers.calls == []
        entries = self.ledger_repo.get_entries("s1")
        assert len(entries) == 1
        assert entries[0].operation_type == OperationType.CHAT_MESSAGE
        assert entries[0].metadata == {"history_length": 2, "phase": 1}

    @pytest.mark.asyncio
    async def test_order_created(self):
        call = ToolCall("createConversationalOrder", ORDER_ARGS, call_id="call_1")
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[call]),
            GenerationResult(text="Your order ORD-1001 is confirmed!", usage=USAGE),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)

        assert result.text == "Your order ORD-1001 is confirmed!"
        assert result.order_id == "ORD-1001"
        assert result.tool_id == ToolId.CREATE_ORDER
        assert result.provider_calls == 2

        kind, shop_id, conversation_id, args = self.handlers.calls[0]
        assert (kind, shop_id, conversation_id) == ("order", "s1", "c1")
        assert args.products == (OrderLine("Green Tea", 2),)

        # Phase 2 sees the model's call and the tool result
        phase2_contents = provider.requests[1][1]
        assert [t.role for t in phase2_contents] == [Role.USER, Role.MODEL, Role.TOOL]
        assert phase2_contents[1].tool_calls == (call,)
        assert phase2_contents[2].tool_call_id == "call_1"
        assert phase2_contents[2].tool_response == {"success": True, "orderId": "ORD-1001"}

        # Tools are offered in phase 1 only
        assert provider.requests[0][2].tools == COMMERCE_TOOLS
        assert provider.requests[1][2].tools == ()
        assert provider.requests[1][2].system_instruction == "sys"

        phases = [e.metadata["phase"] for e in self.ledger_repo.get_entries("s1", newest_first=False)]
        assert phases == [1, 2]

    @pytest.mark.asyncio
    async def test_booking_dispatch(self):
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[ToolCall("createBookingTool", BOOKING_ARGS)]),
            GenerationResult(text="Booked!", usage=USAGE),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)
        assert result.order_id == "BKG-7"
        assert self.handlers.calls[0][0] == "booking"

    @pytest.mark.asyncio
    async def test_handler_failure_is_reported_to_model(self):
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[ToolCall("createConversationalOrder", ORDER_ARGS)]),
            GenerationResult(text="Sorry, that item is out of stock.", usage=USAGE),
        )
        handlers = RecordingHandlers(order_result=ToolResult(success=False, error="Out of stock"))
        result = await self._orchestrator(provider, handlers).run(self.ctx, self.contents, self.config)

        assert result.order_id is None
        assert result.text == "Sorry, that item is out of stock."
        assert provider.requests[1][1][-1].tool_response == {"success": False, "error": "Out of stock"}

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failed_result(self, caplog):
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[ToolCall("createConversationalOrder", ORDER_ARGS)]),
            GenerationResult(text="Something went wrong with your order.", usage=USAGE),
        )
        handlers = RecordingHandlers(error=RuntimeError("inventory service down"))
        with caplog.at_level(logging.ERROR, logger="shopbot_engine.core.tools"):
            result = await self._orchestrator(provider, handlers).run(self.ctx, self.contents, self.config)

        assert result.order_id is None
        assert result.tool_result == ToolResult(success=False, error="inventory service down")
        assert "Tool handler create_order failed" in caplog.text

    @pytest.mark.asyncio
    async def test_invalid_arguments_skip_handler(self):
        bad_args = dict(ORDER_ARGS, products=[])
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[ToolCall("createConversationalOrder", bad_args)]),
            GenerationResult(text="Which products would you like?", usage=USAGE),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)

        assert self.handlers.calls == []
        assert result.tool_result.error.startswith("Invalid arguments: products")
        assert result.text == "Which products would you like?"

    @pytest.mark.asyncio
    async def test_only_first_call_executed(self, caplog):
        calls = [
            ToolCall("createConversationalOrder", ORDER_ARGS),
            ToolCall("createBookingTool", BOOKING_ARGS),
        ]
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=calls),
            GenerationResult(text="Done.", usage=USAGE),
        )
        with caplog.at_level(logging.WARNING, logger="shopbot_engine.core.tools"):
            await self._orchestrator(provider).run(self.ctx, self.contents, self.config)

        assert [c[0] for c in self.handlers.calls] == ["order"]
        assert "only 'createConversationalOrder' is executed" in caplog.text

    @pytest.mark.asyncio
    async def test_unknown_tool_returns_phase1_text(self):
        provider = ScriptedProvider(
            GenerationResult(text="Let me check.", usage=USAGE, tool_calls=[ToolCall("deleteAllOrders", {})]),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)
        assert result.text == "Let me check."
        assert self.handlers.calls == []
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_follow_up_tool_calls_ignored(self):
        call = ToolCall("createConversationalOrder", ORDER_ARGS)
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[call]),
            GenerationResult(text="Confirmed.", usage=USAGE, tool_calls=[call]),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)
        assert result.text == "Confirmed."
        assert len(self.handlers.calls) == 1

    @pytest.mark.asyncio
    async def test_follow_up_with_only_tool_call_has_empty_text(self):
        call = ToolCall("createConversationalOrder", ORDER_ARGS)
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[call]),
            GenerationResult(text="", usage=USAGE, tool_calls=[call]),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)

        assert result.text == ""
        assert result.order_id == "ORD-1001"
        assert len(self.handlers.calls) == 1
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_follow_up_failure_keeps_order(self):
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[ToolCall("createConversationalOrder", ORDER_ARGS)]),
            ValueError("provider rejected request"),
        )
        result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)

        assert result.order_id == "ORD-1001"
        assert isinstance(result.follow_up_error, ValueError)
        assert len(self.ledger_repo.get_entries("s1")) == 1

    @pytest.mark.asyncio
    async def test_follow_up_failure_after_failed_tool_propagates(self):
        provider = ScriptedProvider(
            GenerationResult(text="", usage=USAGE, tool_calls=[ToolCall("createConversationalOrder", ORDER_ARGS)]),
            ValueError("provider rejected request"),
        )
        handlers = RecordingHandlers(order_result=ToolResult(success=False, error="Out of stock"))
        with pytest.raises(ValueError):
            await self._orchestrator(provider, handlers).run(self.ctx, self.contents, self.config)

    @pytest.mark.asyncio
    async def test_missing_usage_is_not_recorded(self, caplog):
        provider = ScriptedProvider(GenerationResult(text="Hi!"))
        with caplog.at_level(logging.WARNING, logger="shopbot_engine.core.tools"):
            result = await self._orchestrator(provider).run(self.ctx, self.contents, self.config)
        assert result.text == "Hi!"
        assert self.ledger_repo.get_entries() == []
        assert "no usage metadata" in caplog.text
