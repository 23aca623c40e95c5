"""
Unified LLM client using LiteLLM for multi-provider support.

Task-based model selection with automatic fallback on transient errors.
Every call carries a hard timeout; the ledger never waits on a model longer
than its collaborator budget.

Usage:
    from campaign_ledger.llm.llm_client import LLMClient, LLMTask

    client = LLMClient(task=LLMTask.FRAUD_SCORING, timeout=10)
    response = client.generate(prompt, json_mode=True)
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import litellm
from litellm import completion, completion_cost

# Suppress verbose LiteLLM logging
litellm.suppress_debug_info = True

logging.getLogger("LiteLLM").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# MODEL CONSTANTS
# =============================================================================

MODEL_GEMINI_25_FLASH = "gemini-2.5-flash"
MODEL_GEMINI_20_FLASH = "gemini-2.0-flash"
MODEL_GPT4O_MINI = "gpt-4o-mini"
MODEL_CLAUDE_HAIKU_45 = "claude-haiku-4-5"

MODEL_REGISTRY: Dict[str, Dict[str, Any]] = {
    MODEL_GEMINI_25_FLASH: {
        "litellm_name": "gemini/gemini-2.5-flash",
        "provider": "google",
        "cost_per_1m_input": 0.15,
        "cost_per_1m_output": 0.60,
        "supports_json_mode": True,
    },
    MODEL_GEMINI_20_FLASH: {
        "litellm_name": "gemini/gemini-2.0-flash",
        "provider": "google",
        "cost_per_1m_input": 0.10,
        "cost_per_1m_output": 0.40,
        "supports_json_mode": True,
    },
    MODEL_GPT4O_MINI: {
        "litellm_name": "gpt-4o-mini",
        "provider": "openai",
        "cost_per_1m_input": 0.15,
        "cost_per_1m_output": 0.60,
        "supports_json_mode": True,
    },
    MODEL_CLAUDE_HAIKU_45: {
        "litellm_name": "anthropic/claude-haiku-4-5",
        "provider": "anthropic",
        "cost_per_1m_input": 1.00,
        "cost_per_1m_output": 5.00,
        "supports_json_mode": True,
    },
}


class LLMTask(Enum):
    """LLM task types with specific model configurations."""

    FRAUD_SCORING = "fraud_scoring"
    PLAUSIBILITY_CHECK = "plausibility_check"


# Task -> (primary_model, fallback_models)
TASK_MODELS: Dict[LLMTask, Tuple[str, List[str]]] = {
    LLMTask.FRAUD_SCORING: (MODEL_GEMINI_25_FLASH, [MODEL_GPT4O_MINI]),
    LLMTask.PLAUSIBILITY_CHECK: (MODEL_GEMINI_20_FLASH, [MODEL_GEMINI_25_FLASH]),
}

# Prompt versions - increment when prompt templates change
PROMPT_VERSIONS: Dict[str, str] = {
    "fraud_scoring": "v1.1.0",
    "plausibility_check": "v1.0.0",
}


def get_prompt_version(task_name: str) -> str:
    """Get the current prompt version for a task."""
    return PROMPT_VERSIONS.get(task_name, "v0.0.0")


@dataclass
class LLMResponse:
    """Response from any LLM provider with tracking metadata."""

    text: str
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    finish_reason: Optional[str] = None
    prompt_version: str = ""
    prompt_hash: str = ""
    timestamp: str = ""
    task: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMClient:
    """
    LLM client with task-based model selection and automatic fallback.

    Usage:
        client = LLMClient(task=LLMTask.PLAUSIBILITY_CHECK)
        client = LLMClient(model=MODEL_GPT4O_MINI, timeout=5)
    """

    def __init__(
        self,
        task: Optional[LLMTask] = None,
        model: Optional[str] = None,
        api_keys: Optional[Dict[str, str]] = None,
        timeout: float = 10.0,
        logger=None,
    ):
        """
        Initialize LLM client.

        Args:
            task: LLM task type (determines model and fallbacks)
            model: Specific model name (overrides task)
            api_keys: Dict of provider -> API key
            timeout: Per-request timeout in seconds
            logger: Optional logger instance
        """
        self.logger = logger or logging.getLogger(__name__)
        self.api_keys = api_keys or {}
        self.task = task
        self.timeout = timeout

        self._setup_api_keys()

        if model:
            if model not in MODEL_REGISTRY:
                raise ValueError(f"Unknown model: {model}. Available: {list(MODEL_REGISTRY.keys())}")
            self.model_name = model
            self.fallback_models = []
        elif task:
            self.model_name, self.fallback_models = TASK_MODELS[task]
        else:
            self.model_name = MODEL_GEMINI_25_FLASH
            self.fallback_models = [MODEL_GPT4O_MINI]
        self.model_config = MODEL_REGISTRY[self.model_name]

    def _setup_api_keys(self):
        """Set API keys in environment for LiteLLM (only if not already set)."""
        key_map = {
            "GEMINI_API_KEY": self.api_keys.get("google") or self.api_keys.get("gemini"),
            "ANTHROPIC_API_KEY": self.api_keys.get("anthropic"),
            "OPENAI_API_KEY": self.api_keys.get("openai"),
        }
        for env_var, value in key_map.items():
            if value and not os.environ.get(env_var):
                os.environ[env_var] = value

    def _is_permanent_error(self, error: Exception) -> bool:
        """Authentication and malformed-request errors should not trigger fallback."""
        error_str = str(error).lower()
        error_type = type(error).__name__.lower()
        permanent_indicators = [
            "authentication",
            "api key",
            "unauthorized",
            "401",
            "403",
            "permission denied",
            "invalid request",
            "authenticationerror",
            "invalidrequesterror",
        ]
        return any(indicator in error_str or indicator in error_type for indicator in permanent_indicators)

    def _compute_prompt_hash(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        full_prompt = f"{system_prompt or ''}|||{prompt}"
        return hashlib.sha256(full_prompt.encode()).hexdigest()[:16]

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.0,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate text using the configured model with automatic fallback.

        Raises:
            RuntimeError: all models failed
            Exception: a permanent provider error (bad key, bad request)
        """
        models_to_try = [self.model_name] + list(self.fallback_models)
        prompt_hash = self._compute_prompt_hash(prompt, system_prompt)
        last_error: Optional[Exception] = None

        for model_name in models_to_try:
            try:
                return self._generate_with_model(model_name, prompt, system_prompt, temperature, json_mode, prompt_hash)
            except Exception as e:
                last_error = e
                if self._is_permanent_error(e):
                    self.logger.error(f"Permanent error with {model_name}: {e}. Not trying fallback.")
                    raise
                if model_name == models_to_try[-1]:
                    break
                self.logger.warning(f"Error with {model_name}: {type(e).__name__}: {e}. Trying fallback...")

        raise RuntimeError(f"All models failed. Last error: {last_error}")

    def _generate_with_model(
        self,
        model_name: str,
        prompt: str,
        system_prompt: Optional[str],
        temperature: float,
        json_mode: bool,
        prompt_hash: str,
    ) -> LLMResponse:
        model_config = MODEL_REGISTRY[model_name]

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": model_config["litellm_name"],
            "messages": messages,
            "temperature": temperature,
            "timeout": self.timeout,
        }
        if json_mode and model_config.get("supports_json_mode"):
            kwargs["response_format"] = {"type": "json_object"}

        litellm.drop_params = True

        response = completion(**kwargs)

        if not response.choices:
            raise RuntimeError(f"LLM API returned empty choices array. Model: {model_name}")

        text = response.choices[0].message.content or ""

        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "prompt_tokens", 0) or 0 if usage else 0
        output_tokens = getattr(usage, "completion_tokens", 0) or 0 if usage else 0
        try:
            cost = completion_cost(completion_response=response)
        except Exception:
            cost = (input_tokens / 1_000_000) * model_config["cost_per_1m_input"] + (
                output_tokens / 1_000_000
            ) * model_config["cost_per_1m_output"]

        llm_response = LLMResponse(
            text=text,
            model=model_name,
            provider=model_config["provider"],
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=cost,
            finish_reason=response.choices[0].finish_reason,
            prompt_version=get_prompt_version(self.task.value if self.task else "unknown"),
            prompt_hash=prompt_hash,
            timestamp=datetime.now(timezone.utc).isoformat(),
            task=self.task.value if self.task else None,
            metadata={"raw_response_id": getattr(response, "id", None)},
        )

        self.logger.debug(
            f"LLM call: {model_name} | Tokens: {input_tokens}->{output_tokens} | Cost: ${cost:.6f}"
        )
        return llm_response


def get_client_for_task(task: LLMTask, timeout: float = 10.0, logger=None) -> LLMClient:
    """Get an LLM client configured for a specific task."""
    return LLMClient(task=task, timeout=timeout, logger=logger)
