"""
AI 提供商基类
所有 AI 提供商适配器都继承此抽象基类
"""

from abc import ABC, abstractmethod
from typing import Optional

import httpx


class BaseAIProvider(ABC):
    """AI 提供商抽象基类：一次调用把 prompt 变成模型返回的原始文本"""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        # 测试时注入 httpx.MockTransport
        self._transport = transport

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """提供商名称"""
        ...

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """
        单次往返调用，返回模型输出文本。
        不做任何内部重试，重试由任务台账决定。
        """
        ...

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, trust_env=False, transport=self._transport
        )
