"""Contracts for the external collaborators the engine calls out to.

Two kinds of provider exist:

``ContextProvider``
    ``query(sample)`` returns a mapping from entity type to the entities or
    relationships recognised for a sample (a knowledge-graph lookup, a CRM
    join, ...).  Best effort: failures degrade to "no context".

``LabelModelProvider``
    ``predict(sample, context)`` returns ``(label, confidence)``.  Several
    providers may be configured; the executor tries them in order.

Neither contract knows about timeouts or retries; the engine wraps every call.
"""

from __future__ import annotations

import json
import os
import time
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from .errors import ProviderError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import ProviderConfig
    from .shared.models import Sample

try:  # pragma: no cover - optional dependency
    from openai import AzureOpenAI  # type: ignore
except ImportError:  # pragma: no cover - handled when the provider is constructed
    AzureOpenAI = None  # type: ignore


class ContextProvider:
    """Base class for context providers."""

    name = "context"

    def query(self, sample: "Sample") -> Mapping[str, Any]:
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - hook for providers with resources
        return None


class LabelModelProvider:
    """Base class shared by all label model providers."""

    name = "model"

    def predict(self, sample: "Sample", context: Optional[Mapping[str, Any]]) -> Tuple[str, float]:
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - hook for providers with resources
        return None


class AzureOpenAILabelProvider(LabelModelProvider):
    """Label provider backed by Azure OpenAI chat completions in JSON mode.

    The prompt lists the project's allowed labels and asks for
    ``{"label": ..., "confidence": ...}``.  Confidence is taken from the
    model's reply; range checking happens in the executor.
    """

    def __init__(self, cfg: "ProviderConfig", labels: List[str], task_type: str = "classification"):
        if AzureOpenAI is None:  # pragma: no cover - runtime guard
            raise ImportError("Please install openai>=1.0 to use the Azure provider.")
        api_key = cfg.azure_api_key or os.getenv("AZURE_OPENAI_API_KEY")
        endpoint = cfg.azure_endpoint or os.getenv("AZURE_OPENAI_ENDPOINT")
        if not api_key or not endpoint:
            raise ValueError("Azure provider requires AZURE_OPENAI_API_KEY and AZURE_OPENAI_ENDPOINT.")
        self.cfg = cfg
        self.name = cfg.name
        self.labels = list(labels)
        self.task_type = task_type
        self._last_call_ts = 0.0
        self.client = AzureOpenAI(
            api_key=api_key,
            api_version=cfg.azure_api_version,
            azure_endpoint=endpoint,
            timeout=cfg.timeout,
        )

    def _respect_rpm_limit(self) -> None:
        rpm = self.cfg.rpm_limit
        if not rpm:
            return
        min_spacing = 60.0 / float(rpm)
        delta = time.time() - self._last_call_ts
        if delta < min_spacing:
            time.sleep(min_spacing - delta)

    def _messages(self, sample: "Sample", context: Optional[Mapping[str, Any]]) -> List[Dict[str, str]]:
        system = "\n\n".join(
            [
                f"You label samples for a {self.task_type} task.",
                "Choose the single best label from: " + ", ".join(self.labels) + ".",
                'Return strict JSON only: {"label": <label>, "confidence": <number between 0 and 1>}.',
            ]
        )
        user_parts = [f"Sample {sample.sample_id} ({sample.content_ref}):", sample.content or ""]
        if context:
            user_parts.append("Known entities:\n" + json.dumps(dict(context), sort_keys=True))
        return [{"role": "system", "content": system}, {"role": "user", "content": "\n".join(user_parts)}]

    def predict(self, sample: "Sample", context: Optional[Mapping[str, Any]]) -> Tuple[str, float]:
        self._respect_rpm_limit()
        try:
            resp = self.client.chat.completions.create(
                model=self.cfg.model_name,
                temperature=float(self.cfg.temperature),
                messages=self._messages(sample, context),
                response_format={"type": "json_object"},
                n=1,
            )
        finally:
            self._last_call_ts = time.time()
        content = resp.choices[0].message.content or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ProviderError(self.name, f"non-JSON reply: {content[:200]}") from exc
        if not isinstance(data, Mapping) or "label" not in data:
            raise ProviderError(self.name, f"reply lacks a label: {content[:200]}")
        try:
            confidence = float(data.get("confidence"))
        except (TypeError, ValueError) as exc:
            raise ProviderError(self.name, f"reply lacks a numeric confidence: {content[:200]}") from exc
        return str(data["label"]).strip(), confidence

    def close(self) -> None:  # pragma: no cover - network client
        close = getattr(self.client, "close", None)
        if callable(close):
            close()


def build_label_provider(cfg: "ProviderConfig", labels: List[str], task_type: str) -> LabelModelProvider:
    """Factory helper that instantiates the requested provider backend."""

    backend_name = (cfg.backend or "azure").lower()
    if backend_name in {"azure", "azure_openai"}:
        return AzureOpenAILabelProvider(cfg, labels, task_type)
    raise ValueError(f"Unsupported label provider backend: {cfg.backend}")


__all__ = [
    "AzureOpenAILabelProvider",
    "ContextProvider",
    "LabelModelProvider",
    "build_label_provider",
]
