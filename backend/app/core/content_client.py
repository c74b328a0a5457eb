"""
内容生成客户端
统一管理 AI 提供商，把渲染好的 prompt 变成结构化草稿（RawDraft）。
每次调用只做一次外部往返，强制超时，并区分超时 / 提供商错误两类失败。
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from app.config import settings
from app.core.ai_providers.base import BaseAIProvider
from app.core.ai_providers.gemini_provider import GeminiProvider
from app.core.ai_providers.openai_compatible_provider import OpenAICompatibleProvider
from app.core.errors import GenerationProviderError, GenerationTimeout

logger = logging.getLogger(__name__)


@dataclass
class RawDraft:
    """提供商返回的草稿，字段未经校验"""
    title: str = ""
    body: str = ""
    excerpt: str = ""
    seo: dict = field(default_factory=dict)
    # 原始文本，JSON 解析失败时由解析器按纯文本处理
    raw_text: str = ""
    structured: bool = False
    model: Optional[str] = None


def _parse_json_text(text: str) -> Optional[dict]:
    """
    从 AI 返回的文本中解析 JSON，处理 markdown 代码块等情况。
    无法解析时返回 None。
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        data = json.loads(text, strict=False)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(text[start:end], strict=False)
        except json.JSONDecodeError:
            return None
    return data if isinstance(data, dict) else None


def to_raw_draft(text: str, model: Optional[str] = None) -> RawDraft:
    """把提供商输出文本转换为 RawDraft"""
    data = _parse_json_text(text or "")
    if data is None:
        return RawDraft(raw_text=text or "", structured=False, model=model)

    keywords = data.get("seoKeywords") or data.get("keywords") or []
    return RawDraft(
        title=str(data.get("title") or ""),
        body=str(data.get("content") or data.get("body") or ""),
        excerpt=str(data.get("excerpt") or ""),
        seo={
            "title": str(data.get("seoTitle") or ""),
            "description": str(data.get("seoDescription") or ""),
            "keywords": keywords if isinstance(keywords, list) else [],
        },
        raw_text=text,
        structured=True,
        model=model,
    )


def _describe_status_error(exc: httpx.HTTPStatusError) -> str:
    """把 HTTP 错误整理成运营可读的失败原因"""
    status = exc.response.status_code
    if status == 429:
        return "Rate limit exceeded (HTTP 429). Please try again later."
    if status in (502, 503, 504):
        return f"Generation provider unavailable (HTTP {status})."
    if status in (401, 403):
        return f"API key error (HTTP {status}). Please check the provider API key."
    return f"Generation provider error (HTTP {status}): {exc.response.text[:200]}"


class ContentGenerationClient:
    """内容生成客户端"""

    def __init__(
        self,
        provider: Optional[BaseAIProvider] = None,
        timeout: Optional[float] = None,
    ):
        self._providers: dict[str, BaseAIProvider] = {}
        self.timeout = timeout if timeout is not None else settings.GENERATION_TIMEOUT_SECONDS
        if provider is not None:
            self._providers[provider.provider_name] = provider
            self._active = provider.provider_name
        else:
            self._init_providers()
            self._active = settings.AI_PROVIDER

    def _try_init_provider(
        self, name: str, provider_cls: type, api_key: Optional[str], base_url: str, model: str
    ):
        """
        安全地初始化单个提供商，捕获异常避免影响其他提供商。
        """
        if not api_key:
            return
        try:
            self._providers[name] = provider_cls(
                api_key=api_key,
                base_url=base_url,
                model=model,
                timeout=self.timeout,
                name=name,
            )
            logger.info(f"{name} 提供商已初始化 (model={model})")
        except Exception as e:
            logger.warning(f"{name} 提供商初始化失败: {e}")

    def _init_providers(self):
        """根据配置初始化可用的 AI 提供商"""
        self._try_init_provider(
            "gemini", GeminiProvider,
            settings.GEMINI_API_KEY, settings.GEMINI_BASE_URL, settings.GEMINI_MODEL,
        )
        self._try_init_provider(
            "openai", OpenAICompatibleProvider,
            settings.OPENAI_API_KEY, settings.OPENAI_BASE_URL, settings.OPENAI_MODEL,
        )
        self._try_init_provider(
            "deepseek", OpenAICompatibleProvider,
            settings.DEEPSEEK_API_KEY, settings.DEEPSEEK_BASE_URL, settings.DEEPSEEK_MODEL,
        )

        if not self._providers:
            logger.warning("没有配置任何 AI API Key，请在 .env 文件或环境变量中设置")

    def get_available_providers(self) -> list[str]:
        """获取可用的 AI 提供商列表"""
        return list(self._providers.keys())

    def _get_provider_or_raise(self) -> BaseAIProvider:
        provider = self._providers.get(self._active)
        if provider:
            return provider
        available = self.get_available_providers()
        if not available:
            raise GenerationProviderError("No AI provider configured (missing API key)")
        raise GenerationProviderError(
            f"AI provider '{self._active}' is not available. "
            f"Available providers: {', '.join(available)}"
        )

    async def generate(self, prompt_text: str) -> RawDraft:
        """
        生成草稿

        Raises:
            GenerationTimeout: 超过 self.timeout 秒未返回
            GenerationProviderError: 提供商不可用或返回错误
        """
        provider = self._get_provider_or_raise()
        logger.info(f"使用 {provider.provider_name} 生成文章 (prompt 长度={len(prompt_text)})")

        try:
            text = await asyncio.wait_for(provider.complete(prompt_text), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            logger.error(f"文章生成超时 ({provider.provider_name}): {type(e).__name__}")
            raise GenerationTimeout(
                f"Generation timed out after {self.timeout:g}s ({provider.provider_name})"
            ) from e
        except httpx.HTTPStatusError as e:
            raise GenerationProviderError(_describe_status_error(e)) from e
        except Exception as e:
            logger.error(f"文章生成失败 ({provider.provider_name}): {e}")
            raise GenerationProviderError(
                f"Generation failed ({provider.provider_name}): {str(e)[:200]}"
            ) from e

        if not isinstance(text, str):
            raise GenerationProviderError(
                f"Generation provider returned no text ({provider.provider_name})"
            )

        draft = to_raw_draft(text, model=getattr(provider, "model", None))
        logger.info(
            f"生成完成: structured={draft.structured}, 文本长度={len(text)}"
        )
        return draft
