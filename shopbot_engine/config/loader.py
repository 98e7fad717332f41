"""
Configuration management and loading.

Handles engine settings from a YAML file and provider credentials from the
environment.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml

from shopbot_engine.core.errors import ConfigurationError

API_KEY_ENV_VAR = "OPENAI_API_KEY"

DEFAULT_GLOBAL_INSTRUCTION = "You are a helpful AI assistant."
DEFAULT_FORBIDDEN_TOPICS = "politics, religion, hate speech"
DEFAULT_SAFETY_RESPONSE = "I'm sorry, I cannot discuss that topic."

DEFAULT_AUTONOMOUS_INSTRUCTIONS = """
--- CONVERSATIONAL COMMERCE: AUTONOMOUS ORDERING ---
You can create orders and bookings yourself.
1. Collect every required detail: customer name, phone number, and either the shipping address, products, quantities and payment method (orders) or the service, date and time (bookings).
2. Only offer products and services that appear in the item catalog, and only payment methods listed in the 'Payment Methods' section.
3. Summarise the details and ask the customer to confirm them explicitly.
4. Only after explicit confirmation, call createConversationalOrder for products or createBookingTool for services. Never invent an order ID."""

PAYMENT_PROOF_INSTRUCTION = (
    "\n5. After the createConversationalOrder tool is called successfully and returns an Order ID, "
    "your next response must inform the user to send their payment screenshot now if the payment "
    "method requires proof (you can see this in the 'Payment Methods' knowledge base section). "
    "Example: 'Your order #TCCS-1008 is confirmed. To finalize, please send a screenshot of your "
    "payment now.'"
)

DEFAULT_ASSISTED_INSTRUCTIONS = """
--- CONVERSATIONAL COMMERCE: ASSISTED ORDERING ---
You cannot create orders or bookings yourself.
1. When a customer wants to buy or book, collect their name, phone number and what they want.
2. Tell them a team member will contact them shortly to complete the order.
3. Never claim that an order or booking has been created and never make up an order ID."""


@dataclass(frozen=True)
class BudgetConfig:
    """Defaults applied when a shop's budget is created lazily."""
    daily: float = 5.00
    monthly: float = 100.00
    alert_threshold: float = 80.0
    auto_optimization: bool = True
    fallback_model: str = "gpt-4o-mini"
    estimated_cost_per_request: float = 0.0001

    def __post_init__(self):
        """Validate budget values are positive."""
        if self.daily <= 0:
            raise ValueError("daily budget must be > 0")
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")
        if not 0 < self.alert_threshold <= 100:
            raise ValueError("alert_threshold must be in (0, 100]")
        if self.estimated_cost_per_request <= 0:
            raise ValueError("estimated_cost_per_request must be > 0")


@dataclass(frozen=True)
class OptimizationConfig:
    """Thresholds (percent of budget used) and history caps for cost optimization."""
    block_threshold: float = 90.0
    switch_model_threshold: float = 80.0
    reduce_context_threshold: float = 60.0
    tight_history_cap: int = 5
    loose_history_cap: int = 10

    def __post_init__(self):
        if not (0 < self.reduce_context_threshold
                < self.switch_model_threshold < self.block_threshold):
            raise ValueError("optimization thresholds must be increasing: reduce < switch < block")
        if self.tight_history_cap < 1 or self.loose_history_cap < 1:
            raise ValueError("history caps must be >= 1")


@dataclass(frozen=True)
class RetryConfig:
    """Exponential backoff settings for provider calls (seconds)."""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.3

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Provider-wide circuit breaker settings."""
    threshold: int = 5
    reset_timeout: float = 30.0

    def __post_init__(self):
        if self.threshold < 1:
            raise ValueError("threshold must be >= 1")
        if self.reset_timeout <= 0:
            raise ValueError("reset_timeout must be > 0")


@dataclass(frozen=True)
class PlanEntitlement:
    """Conversational-commerce entitlement of one subscription plan."""
    enabled: bool
    limit: Optional[int] = None  # None means unlimited

    def __post_init__(self):
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0 or null")


@dataclass(frozen=True)
class CommerceConfig:
    """Plan entitlements plus the data-driven assisted-only override."""
    plans: Dict[str, PlanEntitlement] = field(default_factory=dict)
    assisted_only_plans: FrozenSet[str] = frozenset()
    upgrade_targets: Dict[str, str] = field(default_factory=dict)
    default_upgrade_target: str = "a higher tier"


@dataclass(frozen=True)
class ModelsConfig:
    """Model assignment per profile tier."""
    tiers: Dict[str, str] = field(default_factory=lambda: {
        "fast": "gpt-4o-mini",
        "standard": "gpt-4o",
        "thinking": "o3-mini",
    })
    default_tier: str = "standard"
    description_model: str = "gpt-4o-mini"
    suggestion_model: str = "gpt-4o-mini"
    image_model: str = "gpt-image-1"

    def __post_init__(self):
        if self.default_tier not in self.tiers:
            raise ValueError(f"default_tier '{self.default_tier}' is not a configured tier")

    def model_for_tier(self, tier: Optional[str]) -> str:
        return self.tiers.get(tier or self.default_tier, self.tiers[self.default_tier])


@dataclass(frozen=True)
class GenerationConfig:
    """Sampling parameters and per-call timeout sent with every request."""
    temperature: float = 0.7
    top_p: float = 0.95
    top_k: int = 40
    request_timeout: float = 60.0

    def __post_init__(self):
        if not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be in [0, 2]")
        if not 0 < self.top_p <= 1:
            raise ValueError("top_p must be in (0, 1]")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")


@dataclass(frozen=True)
class ToneConfig:
    """Style rules for one assistant tone."""
    description: str
    must_include: str = ""
    must_avoid: str = ""


@dataclass(frozen=True)
class PromptConfig:
    """Platform-wide prompt content."""
    global_instruction: str = DEFAULT_GLOBAL_INSTRUCTION
    forbidden_topics: str = DEFAULT_FORBIDDEN_TOPICS
    safety_response: str = DEFAULT_SAFETY_RESPONSE
    autonomous_instructions: str = DEFAULT_AUTONOMOUS_INSTRUCTIONS
    assisted_instructions: str = DEFAULT_ASSISTED_INSTRUCTIONS
    secondary_language: str = "English"
    language_names: Dict[str, str] = field(default_factory=lambda: {
        "en": "English",
        "my": "Burmese",
        "th": "Thai",
    })
    allow_training_data: bool = True
    allow_product_catalog: bool = True
    tones: Dict[str, ToneConfig] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenLimit:
    """Per-message token caps for one operation type; breaches are logged."""
    max_input: int
    max_output: int
    max_total: int


DEFAULT_TOKEN_LIMITS: Dict[str, TokenLimit] = {
    "chat_message": TokenLimit(max_input=10000, max_output=2000, max_total=12000),
    "product_description": TokenLimit(max_input=5000, max_output=1000, max_total=6000),
    "photo_studio": TokenLimit(max_input=8000, max_output=8000, max_total=16000),
    "suggestion": TokenLimit(max_input=3000, max_output=500, max_total=3500),
}


@dataclass(frozen=True)
class StorageConfig:
    db_path: str = "shopbot_engine.db"


@dataclass(frozen=True)
class EngineConfig:
    """Complete engine configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    optimization: OptimizationConfig = field(default_factory=OptimizationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    commerce: CommerceConfig = field(default_factory=CommerceConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    prompt: PromptConfig = field(default_factory=PromptConfig)
    token_limits: Dict[str, TokenLimit] = field(default_factory=lambda: dict(DEFAULT_TOKEN_LIMITS))
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def default(cls) -> "EngineConfig":
        return cls()


def resolve_api_key(explicit: Optional[str] = None) -> str:
    """Return the provider API key or fail loudly.

    Raises:
        ConfigurationError: If neither an explicit key nor the environment provides one
    """
    key = explicit or os.environ.get(API_KEY_ENV_VAR, "")
    if not key.strip():
        raise ConfigurationError(
            f"Generation provider credentials missing: set {API_KEY_ENV_VAR}"
        )
    return key.strip()


def load_engine_config(path: str) -> EngineConfig:
    """Load and validate engine configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could lead
    to unexpected cost overruns. Every section is optional; omitted
    sections and keys keep their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Engine config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return EngineConfig.default()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    _check_keys(raw_config, {
        'budget', 'optimization', 'retry', 'circuit_breaker', 'commerce',
        'models', 'generation', 'prompt', 'token_limits', 'storage',
    }, "configuration")

    sections: Dict[str, Any] = {}
    simple_sections = {
        'budget': BudgetConfig,
        'optimization': OptimizationConfig,
        'retry': RetryConfig,
        'circuit_breaker': CircuitBreakerConfig,
        'generation': GenerationConfig,
        'storage': StorageConfig,
    }
    for name, config_cls in simple_sections.items():
        if name in raw_config:
            sections[name] = _build(config_cls, _section(raw_config, name), name)

    if 'commerce' in raw_config:
        sections['commerce'] = _parse_commerce(_section(raw_config, 'commerce'))
    if 'models' in raw_config:
        sections['models'] = _parse_models(_section(raw_config, 'models'))
    if 'prompt' in raw_config:
        sections['prompt'] = _parse_prompt(_section(raw_config, 'prompt'))
    if 'token_limits' in raw_config:
        limits = dict(DEFAULT_TOKEN_LIMITS)
        for op_name, data in _section(raw_config, 'token_limits').items():
            if not isinstance(data, dict):
                raise ValueError(f"'token_limits.{op_name}' must be a dictionary")
            limits[op_name] = _build(TokenLimit, data, f"token_limits.{op_name}")
        sections['token_limits'] = limits

    return EngineConfig(**sections)


def _section(raw: Dict, name: str) -> Dict:
    data = raw[name]
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {sorted(unknown)}")


def _build(config_cls, data: Dict, path: str):
    """Instantiate a flat config dataclass, rejecting unknown keys and bad values."""
    allowed = set(config_cls.__dataclass_fields__)
    _check_keys(data, allowed, path)
    try:
        return config_cls(**data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {path}: {e}")


def _parse_commerce(data: Dict) -> CommerceConfig:
    _check_keys(data, {'plans', 'assisted_only_plans', 'upgrade_targets', 'default_upgrade_target'}, "commerce")

    plans: Dict[str, PlanEntitlement] = {}
    plans_data = data.get('plans') or {}
    if not isinstance(plans_data, dict):
        raise ValueError("'commerce.plans' must be a dictionary")
    for plan_id, plan_data in plans_data.items():
        path = f"commerce.plans.{plan_id}"
        if not isinstance(plan_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _check_keys(plan_data, {'enabled', 'limit'}, path)
        if not isinstance(plan_data.get('enabled'), bool):
            raise ValueError(f"'{path}.enabled' must be true or false")
        limit = plan_data.get('limit')
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int)):
            raise ValueError(f"'{path}.limit' must be an integer or null")
        plans[str(plan_id)] = _build(PlanEntitlement, plan_data, path)

    assisted = data.get('assisted_only_plans') or []
    if not isinstance(assisted, list):
        raise ValueError("'commerce.assisted_only_plans' must be a list")

    targets = data.get('upgrade_targets') or {}
    if not isinstance(targets, dict):
        raise ValueError("'commerce.upgrade_targets' must be a dictionary")

    return CommerceConfig(
        plans=plans,
        assisted_only_plans=frozenset(str(p) for p in assisted),
        upgrade_targets={str(k): str(v) for k, v in targets.items()},
        default_upgrade_target=str(data.get('default_upgrade_target', "a higher tier")),
    )


def _parse_models(data: Dict) -> ModelsConfig:
    _check_keys(data, {'tiers', 'default_tier', 'description_model', 'suggestion_model', 'image_model'}, "models")
    kwargs: Dict[str, Any] = {k: v for k, v in data.items() if k != 'tiers'}
    if 'tiers' in data:
        tiers = data['tiers']
        if not isinstance(tiers, dict) or not tiers:
            raise ValueError("'models.tiers' must be a non-empty dictionary")
        kwargs['tiers'] = {str(k): str(v) for k, v in tiers.items()}
    try:
        return ModelsConfig(**kwargs)
    except ValueError as e:
        raise ValueError(f"Invalid models: {e}")


def _parse_prompt(data: Dict) -> PromptConfig:
    allowed = set(PromptConfig.__dataclass_fields__)
    _check_keys(data, allowed, "prompt")
    kwargs: Dict[str, Any] = dict(data)

    if 'tones' in data:
        tones_data = data['tones'] or {}
        if not isinstance(tones_data, dict):
            raise ValueError("'prompt.tones' must be a dictionary")
        tones: Dict[str, ToneConfig] = {}
        for tone, tone_data in tones_data.items():
            path = f"prompt.tones.{tone}"
            if not isinstance(tone_data, dict):
                raise ValueError(f"'{path}' must be a dictionary")
            if 'description' not in tone_data:
                raise ValueError(f"Missing required 'description' in {path}")
            tones[str(tone)] = _build(ToneConfig, tone_data, path)
        kwargs['tones'] = tones

    if 'language_names' in data:
        names = data['language_names'] or {}
        if not isinstance(names, dict):
            raise ValueError("'prompt.language_names' must be a dictionary")
        kwargs['language_names'] = {str(k): str(v) for k, v in names.items()}

    for flag in ('allow_training_data', 'allow_product_catalog'):
        if flag in data and not isinstance(data[flag], bool):
            raise ValueError(f"'prompt.{flag}' must be true or false")

    return PromptConfig(**kwargs)

