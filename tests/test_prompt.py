"""
Unit tests for layered system prompt composition.
"""

from shopbot_engine.config.loader import PromptConfig, ToneConfig
from shopbot_engine.core.commerce import CommerceMode
from shopbot_engine.core.prompt import (
    BILINGUAL_DIRECTIVE,
    LOCATION_QUERY_DIRECTIVE,
    NO_PRODUCT_DATA,
    STRATEGY_DIRECTIVES,
    PromptInputs,
    compose_system_prompt,
)
from shopbot_engine.core.shop import (
    KnowledgeBase,
    KnowledgeSection,
    PaymentMethod,
    PhysicalLocation,
    SectionType,
)
from shopbot_engine.core.strategy import SalesStrategy

CONFIG = PromptConfig(
    global_instruction="GLOBAL RULES",
    tones={"friendly": ToneConfig(description="Warm and upbeat", must_include="Mingalaba", must_avoid="cheap")},
)

STORE = KnowledgeSection(
    title="Our Stores",
    type=SectionType.LOCATION_LIST,
    locations=[PhysicalLocation("Downtown", "1 Sule Rd", "Yangon", "Yangon Region", phone="09-123")],
)


def _inputs(**overrides) -> PromptInputs:
    settings = dict(
        strategy=SalesStrategy.ONLINE_ONLY,
        commerce_mode=CommerceMode.AUTONOMOUS,
        persona="You are Thiri, the shop assistant.",
        language="my",
        tone="friendly",
        knowledge=KnowledgeBase(
            sections=[KnowledgeSection(title="Returns", content="Returns within 7 days.")],
            product_data="Item: Green Tea, Price: 5000 MMK",
        ),
        payment_methods=[PaymentMethod("KBZPay", "Send to 09-555", requires_proof=True)],
    )
    settings.update(overrides)
    return PromptInputs(**settings)


class TestLayerOrder:
    """Layers appear in a fixed order, each only when triggered."""

    def test_full_omnichannel_order(self):
        prompt = compose_system_prompt(
            _inputs(
                strategy=SalesStrategy.OMNICHANNEL,
                knowledge=KnowledgeBase(sections=[STORE], product_data="Item: Tea"),
                user_name="Aung",
            ),
            CONFIG,
        ).system_instruction

        markers = [
            "CRITICAL LOCATION QUERY DIRECTIVE",
            "CRITICAL SELLING STRATEGY: OMNICHANNEL",
            "AUTONOMOUS ORDERING",
            "GLOBAL RULES",
            "CRITICAL BILINGUAL RESPONSE DIRECTIVE",
            "--- Your Persona for This Shop ---",
            "--- Knowledge Base ---",
            "--- Core Directives & Style Guide ---",
            "CRITICAL SAFETY INSTRUCTION",
        ]
        positions = [prompt.index(marker) for marker in markers]
        assert positions == sorted(positions)
        assert prompt.startswith(LOCATION_QUERY_DIRECTIVE)

    def test_safety_directive_is_last(self):
        prompt = compose_system_prompt(_inputs(), CONFIG).system_instruction
        assert prompt.endswith("respond ONLY with this exact text: \"I'm sorry, I cannot discuss that topic.\"")

    def test_safety_skipped_without_topics(self):
        config = PromptConfig(forbidden_topics="  ")
        prompt = compose_system_prompt(_inputs(), config).system_instruction
        assert "CRITICAL SAFETY INSTRUCTION" not in prompt

    def test_online_only_has_no_strategy_directive(self):
        prompt = compose_system_prompt(_inputs(), CONFIG).system_instruction
        assert "CRITICAL SELLING STRATEGY" not in prompt
        assert "LOCATION QUERY" not in prompt

    def test_physical_only_directive(self):
        prompt = compose_system_prompt(
            _inputs(strategy=SalesStrategy.PHYSICAL_ONLY, knowledge=KnowledgeBase(sections=[STORE])),
            CONFIG,
        ).system_instruction
        assert STRATEGY_DIRECTIVES[SalesStrategy.PHYSICAL_ONLY] in prompt
        assert "- **Name**: Downtown" in prompt
        assert "  **Phone**: 09-123" in prompt


class TestCommerceLayer:
    """Tool schemas are offered only for autonomous online selling."""

    def test_autonomous_online_enables_tools(self):
        composed = compose_system_prompt(_inputs(), CONFIG)
        assert composed.tools_enabled
        assert "AUTONOMOUS ORDERING" in composed.system_instruction
        assert "send their payment screenshot" in composed.system_instruction

    def test_assisted_mode(self):
        composed = compose_system_prompt(_inputs(commerce_mode=CommerceMode.ASSISTED), CONFIG)
        assert not composed.tools_enabled
        assert "ASSISTED ORDERING" in composed.system_instruction
        assert "AUTONOMOUS ORDERING" not in composed.system_instruction

    def test_quota_exceeded_is_assisted(self):
        composed = compose_system_prompt(_inputs(commerce_mode=CommerceMode.QUOTA_EXCEEDED), CONFIG)
        assert not composed.tools_enabled
        assert "ASSISTED ORDERING" in composed.system_instruction

    def test_no_commerce_layer_without_online_selling(self):
        for strategy in (SalesStrategy.PHYSICAL_ONLY, SalesStrategy.INFORMATIONAL_ONLY):
            composed = compose_system_prompt(_inputs(strategy=strategy), CONFIG)
            assert not composed.tools_enabled
            assert "CONVERSATIONAL COMMERCE" not in composed.system_instruction


class TestKnowledgeAndStyle:
    """Knowledge block, permissions, tone and personalization."""

    def test_knowledge_block_contents(self):
        composed = compose_system_prompt(_inputs(), CONFIG)
        prompt = composed.system_instruction
        assert "## Returns\nReturns within 7 days." in prompt
        assert "Item: Green Tea, Price: 5000 MMK" in prompt
        assert "- KBZPay: Send to 09-555 (Requires Proof: true)" in prompt
        assert composed.knowledge_size > 0

    def test_disabled_payment_methods_are_hidden(self):
        prompt = compose_system_prompt(
            _inputs(payment_methods=[PaymentMethod("COD", "Pay on delivery", enabled=False)]),
            CONFIG,
        ).system_instruction
        assert "Payment Methods" not in prompt

    def test_placeholder_product_data_skipped(self):
        prompt = compose_system_prompt(
            _inputs(knowledge=KnowledgeBase(product_data=NO_PRODUCT_DATA), payment_methods=[]),
            CONFIG,
        ).system_instruction
        assert NO_PRODUCT_DATA not in prompt
        assert "--- Knowledge Base ---" not in prompt

    def test_permissions_withhold_data(self):
        config = PromptConfig(allow_training_data=False, allow_product_catalog=False)
        composed = compose_system_prompt(_inputs(payment_methods=[]), config)
        assert "Returns within 7 days." not in composed.system_instruction
        assert "Green Tea" not in composed.system_instruction
        assert composed.knowledge_size == 0

    def test_bilingual_directive_names_languages(self):
        prompt = compose_system_prompt(_inputs(), CONFIG).system_instruction
        assert BILINGUAL_DIRECTIVE.format(primary="Burmese", secondary="English") in prompt

    def test_unknown_language_falls_back(self):
        prompt = compose_system_prompt(_inputs(language="xx"), CONFIG).system_instruction
        assert "primary language is the shop's primary language" in prompt

    def test_tone_rules(self):
        prompt = compose_system_prompt(_inputs(), CONFIG).system_instruction
        assert "- Your persona must be: Warm and upbeat" in prompt
        assert "where relevant: Mingalaba" in prompt
        assert "following words or phrases: cheap" in prompt

    def test_user_name(self):
        prompt = compose_system_prompt(_inputs(user_name="Aung"), CONFIG).system_instruction
        assert "which is Aung." in prompt

    def test_no_style_section_without_tone_or_name(self):
        prompt = compose_system_prompt(_inputs(tone="unknown"), CONFIG).system_instruction
        assert "Core Directives & Style Guide" not in prompt

    def test_deterministic(self):
        assert compose_system_prompt(_inputs(), CONFIG) == compose_system_prompt(_inputs(), CONFIG)
