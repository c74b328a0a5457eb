"""
Google Gemini 提供商适配器
支持 Gemini 原生 API 返回格式和 OpenAI 兼容格式的自动检测
"""

import json

from app.core.ai_providers.openai_compatible_provider import OpenAICompatibleProvider


class GeminiProvider(OpenAICompatibleProvider):
    """Google Gemini API 适配器（Thinking 模型 + 原生返回格式）"""

    @property
    def provider_name(self) -> str:
        return "gemini"

    def _build_payload(self, prompt: str) -> dict:
        """Gemini 2.5+ 系列为 Thinking 模型，内部推理会消耗 token，
        需要更大的 max_tokens 预算以确保输出内容完整。"""
        payload = super()._build_payload(prompt)
        payload["max_tokens"] = 16384
        return payload

    @staticmethod
    def _extract_content(data: dict) -> str:
        """从响应中提取文本内容，兼容 OpenAI 格式和 Gemini 原生格式"""
        # OpenAI 兼容格式: choices[0].message.content
        if "choices" in data:
            return data["choices"][0]["message"]["content"]
        # Gemini 原生格式: response.candidates[0].content.parts[0].text
        resp = data.get("response", data)
        candidates = resp.get("candidates", [])
        if candidates:
            parts = candidates[0].get("content", {}).get("parts", [])
            texts = [p["text"] for p in parts if "text" in p]
            if texts:
                return "".join(texts)
        raise ValueError(
            f"无法从 Gemini 响应中提取内容: {json.dumps(data, ensure_ascii=False)[:500]}"
        )
