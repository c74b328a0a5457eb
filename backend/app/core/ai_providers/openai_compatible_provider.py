"""
OpenAI 兼容 API 通用提供商适配器
适用于所有兼容 OpenAI Chat Completions API 格式的大模型服务
包括：OpenAI、DeepSeek 等，按名称区分
"""

import logging
from typing import Optional

import httpx

from app.core.ai_providers.base import BaseAIProvider

logger = logging.getLogger(__name__)


class OpenAICompatibleProvider(BaseAIProvider):
    """
    OpenAI 兼容 API 通用适配器
    所有使用 /chat/completions 端点的提供商都可以直接使用此类，
    返回格式特殊的提供商（如 Gemini）继承后覆盖 _extract_content。
    """

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        name: str = "openai",
    ):
        super().__init__(api_key, base_url, model, timeout=timeout, transport=transport)
        self._name = name

    @property
    def provider_name(self) -> str:
        return self._name

    def _build_headers(self) -> dict[str, str]:
        """构建 OpenAI 兼容的请求头"""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, prompt: str) -> dict:
        """构建 OpenAI 兼容的请求体（整段 prompt 作为一条 user 消息）"""
        return {
            "model": self.model,
            "messages": [
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.8,
            "max_tokens": 8192,
        }

    @staticmethod
    def _extract_content(data: dict) -> str:
        return data["choices"][0]["message"]["content"]

    async def complete(self, prompt: str) -> str:
        url = f"{self.base_url}/chat/completions"
        async with self._client() as client:
            response = await client.post(
                url, json=self._build_payload(prompt), headers=self._build_headers()
            )
            if response.is_error:
                logger.error(
                    f"[{self.provider_name}] API 请求失败 "
                    f"(HTTP {response.status_code}): {response.text[:500]}"
                )
            response.raise_for_status()
            data = response.json()
        return self._extract_content(data)
