"""
Layered system prompt composition.

Layers, each present only when its trigger holds:
1. Location query directive (physical locations exist)
2. Sales strategy directive (none for online-only shops)
3. Commerce mode instructions (online-selling strategies only)
4. Global instruction
5. Bilingual response policy
6. Shop persona
7. Knowledge base
8. Tone and style directives
9. Safety directive, always last
"""

from dataclasses import dataclass, field
from typing import List, Optional

from shopbot_engine.config.loader import PAYMENT_PROOF_INSTRUCTION, PromptConfig, ToneConfig

from .commerce import CommerceMode
from .shop import KnowledgeBase, KnowledgeSection, PaymentMethod, SectionType
from .strategy import SalesStrategy

NO_PRODUCT_DATA = "No product information available."

LOCATION_QUERY_DIRECTIVE = """
--- CRITICAL LOCATION QUERY DIRECTIVE ---
When a user asks for a physical store location, first check if their query contains a specific city or region (e.g., "in Yangon", "near Mandalay"). If it does, you MUST filter the location lists provided in your knowledge base and ONLY return the locations where the 'City' or 'Region' field matches the user's request. If the user does not specify a location, you may either list all locations or ask them "Which city are you in?" to provide more relevant results.
"""

STRATEGY_DIRECTIVES = {
    SalesStrategy.OMNICHANNEL: """
--- CRITICAL SELLING STRATEGY: OMNICHANNEL ---
This business sells both online AND in physical locations. When a customer expresses interest in buying or booking, you MUST first ask for their preference.
Example phrasing: "Great! Would you like to order online for delivery, or would you prefer to find a nearby store to see it in person?"
Based on their answer, either guide them to an online order/booking, or direct them to one of the physical locations listed in the Knowledge Base.
""",
    SalesStrategy.PHYSICAL_ONLY: """
--- CRITICAL SELLING STRATEGY: PHYSICAL ONLY ---
This business sells products or services exclusively through its physical locations. Your primary goal is to help customers find a store from the lists provided in the Knowledge Base.
You MUST direct them to one of these locations to make a purchase or booking.
You MUST NOT attempt to take an online order or booking, not even to collect details for a human. If a user asks to buy online, you must politely inform them that purchases can only be made at physical stores and then provide store information.
""",
    SalesStrategy.INFORMATIONAL_ONLY: """
--- CRITICAL SELLING STRATEGY: INFORMATIONAL ONLY ---
This business does not sell products or services through you. Your sole purpose is to provide information based on the knowledge base. Do not attempt to take orders, book services, or ask for customer details like name or phone number.
""",
}

BILINGUAL_DIRECTIVE = """
--- CRITICAL BILINGUAL RESPONSE DIRECTIVE ---
You are a bilingual assistant whose primary language is {primary}, but you are also fluent in {secondary}. Follow these rules STRICTLY for every response to create a natural conversation:

1.  **Default to Primary Language:** Your default response language is ALWAYS {primary}. Start conversations in {primary} and continue using it unless the user clearly switches.

2.  **Adaptive Switching to {secondary}:** Analyze the history. IF the user has sent their last TWO consecutive messages primarily in {secondary}, you MUST switch and respond entirely in {secondary}. A single {secondary} word (like a name or city) in an otherwise {primary} context does NOT count as a switch. The user must show a clear pattern of using {secondary}.

3.  **Switching Back to Primary:** IF you are currently responding in {secondary} (because of rule #2) and the user's LATEST message switches back to {primary}, you MUST also switch back and respond entirely in {primary}.

4.  **Consistency is Key:** Do NOT mix languages in a single response. Your entire reply, including any button text, must be in ONE language determined by these rules.
"""

KNOWLEDGE_PREAMBLE = (
    "Your primary role is to answer questions about the shop using the following "
    "information as your source of truth. If a user asks a general conversational "
    "question (like \"hello\") that isn't in the data, respond in a friendly, "
    "conversational manner. Do not invent specific details (like policies or "
    "products) that are not present in this knowledge base."
)

SAFETY_DIRECTIVE = (
    "\n\n--- CRITICAL SAFETY INSTRUCTION ---\n"
    "You are strictly prohibited from discussing any of the following topics: {topics}. "
    "If the user asks about these topics, you MUST ignore all other instructions and "
    "respond ONLY with this exact text: \"{response}\""
)


@dataclass(frozen=True)
class PromptInputs:
    """Everything the composer reads for one turn."""
    strategy: SalesStrategy
    commerce_mode: CommerceMode
    persona: str
    language: str
    tone: str
    knowledge: KnowledgeBase = field(default_factory=KnowledgeBase)
    payment_methods: List[PaymentMethod] = field(default_factory=list)
    user_name: Optional[str] = None


@dataclass(frozen=True)
class ComposedPrompt:
    system_instruction: str
    tools_enabled: bool
    knowledge_size: int


def _format_text_sections(sections: List[KnowledgeSection]) -> str:
    return "\n\n".join(
        f"## {s.title}\n{s.content}"
        for s in sections
        if s.type == SectionType.TEXT and s.content.strip()
    )


def _format_location_sections(sections: List[KnowledgeSection]) -> str:
    lines = []
    for section in sections:
        lines.append(f"## {section.title}\n")
        if section.content:
            lines.append(f"{section.content}\n\n")
        for loc in section.locations:
            lines.append(f"- **Name**: {loc.name}\n")
            lines.append(f"  **Address**: {loc.address_line1}\n")
            lines.append(f"  **City**: {loc.city}\n")
            lines.append(f"  **Region**: {loc.state_region}\n")
            if loc.phone:
                lines.append(f"  **Phone**: {loc.phone}\n")
            if loc.operating_hours:
                lines.append(f"  **Hours**: {loc.operating_hours}\n")
            if loc.notes:
                lines.append(f"  **Notes**: {loc.notes}\n")
            lines.append("\n")
    return "".join(lines)


def _format_payment_methods(methods: List[PaymentMethod]) -> str:
    enabled = [m for m in methods if m.enabled]
    if not enabled:
        return ""
    rows = [
        f"- {m.name}: {m.instructions.replace(chr(10), ' ')} (Requires Proof: {str(m.requires_proof).lower()})"
        for m in enabled
    ]
    return "## Payment Methods\n" + "\n".join(rows)


def build_knowledge_block(
    knowledge: KnowledgeBase,
    payment_methods: List[PaymentMethod],
    config: PromptConfig,
) -> str:
    """Shop knowledge as prompt text, honouring the data-sharing permissions."""
    parts = []
    if config.allow_training_data:
        text = _format_text_sections(knowledge.sections)
        if text:
            parts.append(text)
        locations = _format_location_sections(knowledge.location_sections)
        if locations:
            parts.append(locations)

    if config.allow_product_catalog:
        product_data = knowledge.product_data.strip()
        if product_data and product_data != NO_PRODUCT_DATA:
            parts.append(knowledge.product_data)

    payments = _format_payment_methods(payment_methods)
    if payments:
        parts.append(payments)

    return "\n\n".join(parts)


def _style_rules(tone: Optional[ToneConfig], user_name: Optional[str]) -> str:
    rules = ""
    if tone is not None:
        rules += f"\n- Your persona must be: {tone.description}"
        if tone.must_include:
            rules += (
                "\n- You should try to naturally include these words or phrases "
                f"where relevant: {tone.must_include}"
            )
        if tone.must_avoid:
            rules += f"\n- You MUST NOT use any of the following words or phrases: {tone.must_avoid}"
    if user_name:
        rules += f"\n- You must address the user by their first name, which is {user_name}."
    return rules


def compose_system_prompt(inputs: PromptInputs, config: PromptConfig) -> ComposedPrompt:
    """Build the system instruction for one chat turn.

    Pure: identical inputs always yield an identical prompt.

    Args:
        inputs: Per-turn shop and conversation data
        config: Platform-wide prompt content

    Returns:
        ComposedPrompt with the instruction text, whether tool schemas should
        be offered, and the knowledge block size
    """
    prompt = ""

    if inputs.knowledge.has_physical_locations:
        prompt += LOCATION_QUERY_DIRECTIVE + "\n"

    strategy_directive = STRATEGY_DIRECTIVES.get(inputs.strategy)
    if strategy_directive:
        prompt += strategy_directive + "\n"

    tools_enabled = False
    if inputs.strategy.sells_online:
        if inputs.commerce_mode == CommerceMode.AUTONOMOUS:
            prompt += config.autonomous_instructions + PAYMENT_PROOF_INSTRUCTION
            tools_enabled = True
        else:
            prompt += config.assisted_instructions
        prompt += "\n\n"

    prompt += config.global_instruction or "You are a helpful AI assistant."

    primary = config.language_names.get(inputs.language, "the shop's primary language")
    prompt += BILINGUAL_DIRECTIVE.format(primary=primary, secondary=config.secondary_language)

    prompt += f"\n\n--- Your Persona for This Shop ---\n{inputs.persona}"

    knowledge = build_knowledge_block(inputs.knowledge, inputs.payment_methods, config)
    if knowledge.strip():
        prompt += f"\n\n--- Knowledge Base ---\n{KNOWLEDGE_PREAMBLE}\n{knowledge}"

    rules = _style_rules(config.tones.get(inputs.tone), inputs.user_name)
    if rules:
        prompt += f"\n\n--- Core Directives & Style Guide ---{rules}"

    if config.forbidden_topics.strip() and config.safety_response.strip():
        prompt += SAFETY_DIRECTIVE.format(
            topics=config.forbidden_topics, response=config.safety_response
        )

    return ComposedPrompt(
        system_instruction=prompt,
        tools_enabled=tools_enabled,
        knowledge_size=len(knowledge),
    )
