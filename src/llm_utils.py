"""
LLM utilities for the SQL generation fallback.

Centralizes:
- Client construction against an OpenAI-compatible endpoint (get_llm_client)
- Model selection (choose_model)
- A single-attempt chat call that reports failures in its metadata (call_chat_completion)
- Cleaning of model output (strip_code_fences)
"""

from __future__ import annotations

import re
import time
import logging
from typing import Any, Dict, List, Optional, Tuple

from config import LLMConfig, get_config

logger = logging.getLogger(__name__)


def get_llm_client(llm_cfg: Optional[LLMConfig] = None, api_key: Optional[str] = None):
    """Get a configured OpenAI-SDK client, or None when the fallback is disabled or has no key."""
    cfg = llm_cfg or get_config().llm
    if not cfg.enabled:
        logger.info("Model fallback disabled by configuration")
        return None
    if api_key is None:
        from utils.env_config import get_config as get_env_config
        api_key = get_env_config().get_model_key()
    if not api_key:
        logger.warning(f"{cfg.api_key_env} not set - model fallback unavailable")
        return None
    try:
        import openai
        # One attempt per request: the SDK's own retries are turned off.
        return openai.OpenAI(
            api_key=api_key,
            base_url=cfg.base_url,
            timeout=float(cfg.timeout_seconds),
            max_retries=0,
        )
    except ImportError:
        logger.error("OpenAI package not available")
        raise


def choose_model(task: str, llm_cfg: Optional[LLMConfig] = None) -> Dict[str, Any]:
    """Select model and parameters for a task.

    Returns dict with keys: model, temperature, max_tokens
    """
    cfg = llm_cfg or get_config().llm
    task = (task or "").lower()
    if task == 'sql_generation':
        return {
            'model': cfg.model,
            'temperature': float(cfg.temperature),
            'max_tokens': int(cfg.max_tokens),
        }
    return {
        'model': cfg.model,
        'temperature': 0.0,
        'max_tokens': 500,
    }


def call_chat_completion(client, messages: List[Dict[str, str]], *,
                         model: str, max_tokens: int,
                         temperature: Optional[float] = None) -> Tuple[str, Dict[str, Any]]:
    """Call chat.completions once and measure latency.

    Returns (content, meta) where meta has: model, latency_ms, usage, error.
    Failures are reported in meta['error'] with empty content; nothing is retried.
    """
    start = time.time()
    logger.info(f"LLM call start | params={{'model': {model!r}, 'max_tokens': {int(max_tokens)}, 'messages_count': {len(messages)}}}")
    kwargs: Dict[str, Any] = {
        'model': model,
        'messages': messages,
        'max_tokens': int(max_tokens),
        'temperature': float(temperature if temperature is not None else 0.0),
    }
    try:
        resp = client.chat.completions.create(**kwargs)
        content = (resp.choices[0].message.content or '').strip()
    except Exception as e:
        latency_ms = int((time.time() - start) * 1000)
        logger.warning(f"LLM call failed | model={model} latency_ms={latency_ms} err={e}")
        return "", {'model': model, 'latency_ms': latency_ms, 'usage': None, 'error': str(e)}

    latency_ms = int((time.time() - start) * 1000)
    usage = getattr(resp, 'usage', None)
    logger.info(f"LLM call ok | model={model} tokens={max_tokens} latency_ms={latency_ms}")
    return content, {'model': model, 'latency_ms': latency_ms, 'usage': usage, 'error': None}


_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*\n?(.*?)```", re.DOTALL)


def strip_code_fences(text: str) -> str:
    """Return the body of the first fenced block, or the text itself without stray fences."""
    s = (text or '').strip()
    m = _FENCE_RE.search(s)
    if m:
        return m.group(1).strip()
    return s.replace('```sql', '').replace('```', '').strip()
