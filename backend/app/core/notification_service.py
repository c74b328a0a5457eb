"""
WhatsApp 通知
- WhatsAppTransport：Evolution API 的最小封装（文本 / 图片消息）
- NotificationDispatcher：按收件人逐个发送文章完成通知，任何失败都只记录不抛出
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

_STATUS_TEXT = {
    "ar": {"published": "منشور", "draft": "مسودة"},
    "en": {"published": "Published", "draft": "Draft"},
}

_ARABIC_WEEKDAYS = ["الاثنين", "الثلاثاء", "الأربعاء", "الخميس", "الجمعة", "السبت", "الأحد"]
_ARABIC_MONTHS = [
    "يناير", "فبراير", "مارس", "أبريل", "مايو", "يونيو",
    "يوليو", "أغسطس", "سبتمبر", "أكتوبر", "نوفمبر", "ديسمبر",
]


@dataclass
class DeliveryResult:
    """单个收件人的发送结果"""
    number: str
    success: bool
    error: Optional[str] = None
    # text / media
    kind: str = "text"


class WhatsAppTransport:
    """Evolution API 客户端"""

    def __init__(
        self,
        server_url: Optional[str] = None,
        api_key: Optional[str] = None,
        instance: Optional[str] = None,
        country_code: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.server_url = (server_url or settings.WA_SERVER_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.WA_API_KEY
        self.instance = instance if instance is not None else settings.WA_INSTANCE
        self.country_code = country_code or settings.WA_DEFAULT_COUNTRY_CODE
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key and self.instance)

    def format_phone_number(self, number: str) -> str:
        """只保留数字；0 开头的本地号码补全默认国家码"""
        cleaned = re.sub(r"\D", "", number or "")
        if cleaned.startswith("0"):
            cleaned = self.country_code + cleaned[1:]
        return cleaned

    async def _post(self, action: str, payload: dict) -> None:
        if not self.is_configured():
            raise RuntimeError("WhatsApp not configured")
        url = f"{self.server_url}/message/{action}/{self.instance}"
        async with httpx.AsyncClient(
            timeout=self.timeout, trust_env=False, transport=self._transport
        ) as client:
            response = await client.post(
                url,
                json=payload,
                headers={"apikey": self.api_key, "Content-Type": "application/json"},
            )
        if response.is_error:
            try:
                message = response.json().get("message")
            except ValueError:
                message = None
            raise RuntimeError(
                f"WhatsApp API error (HTTP {response.status_code}): {message or response.text[:200]}"
            )

    async def send_message(self, number: str, text: str) -> None:
        """发送文本消息，失败抛 RuntimeError / httpx.HTTPError"""
        await self._post(
            "sendText",
            {
                "number": self.format_phone_number(number),
                "text": text,
                "delay": 1500,
                "linkPreview": True,
            },
        )

    async def send_media_message(self, number: str, media_url: str, caption: str = "") -> str:
        """
        发送图片消息，失败时回退为文本消息

        Returns:
            实际发送的消息类型：media / text
        """
        try:
            await self._post(
                "sendMedia",
                {
                    "number": self.format_phone_number(number),
                    "mediaMessage": {
                        "mediatype": "image",
                        "media": media_url,
                        "caption": caption,
                    },
                },
            )
            return "media"
        except Exception as e:
            logger.warning(f"WhatsApp 图片消息发送失败，改发文本: {e}")
            await self.send_message(number, caption)
            return "text"


def resolve_cover_url(cover_image: Optional[str], base_url: Optional[str] = None) -> Optional[str]:
    """封面图是站内相对路径时拼接 BASE_URL"""
    if not cover_image:
        return None
    if cover_image.startswith(("http://", "https://")):
        return cover_image
    base = (base_url or settings.BASE_URL).rstrip("/")
    return f"{base}/{cover_image.lstrip('/')}"


def article_url(article, frontend_url: Optional[str] = None) -> str:
    """已发布文章指向前台，草稿指向后台编辑页"""
    base = (frontend_url or settings.FRONTEND_URL).rstrip("/")
    if article.status == "published":
        return f"{base}/articles/{article.slug}"
    return f"{base}/dashboard/articles/{article.slug}/edit"


def build_article_message(article, locale: str, url: str) -> str:
    texts = _STATUS_TEXT.get(locale, _STATUS_TEXT["en"])
    status_text = texts.get(article.status, article.status)
    if locale == "ar":
        return (
            f"✅ تم إنشاء مقال جديد!\n\n"
            f"📝 العنوان: {article.title}\n"
            f"📊 الحالة: {status_text}\n"
            f"🔗 الرابط: {url}"
        )
    return (
        f"✅ New article created!\n\n"
        f"📝 Title: {article.title}\n"
        f"📊 Status: {status_text}\n"
        f"🔗 URL: {url}"
    )


def _arabic_date(now: datetime) -> str:
    return f"{_ARABIC_WEEKDAYS[now.weekday()]}، {now.day} {_ARABIC_MONTHS[now.month - 1]} {now.year}"


def build_test_message() -> str:
    return f"🧪 اختبار اتصال - Test connection from {settings.SITE_NAME}"


def build_batch_summary(
    generated: int,
    failed: int,
    total: int,
    titles: Sequence[str] = (),
    now: Optional[datetime] = None,
) -> str:
    """每日批次汇总消息（阿拉伯语）"""
    lines = [
        "🤖 *تقرير توليد المقالات اليومي*",
        f"📅 {_arabic_date(now or datetime.now())}",
        "",
        f"✅ المقالات المُولّدة: {generated}",
    ]
    if failed > 0:
        lines.append(f"❌ المقالات الفاشلة: {failed}")
    lines.append(f"📊 المجموع المستهدف: {total}")
    lines.append("")
    if titles:
        lines.append("📝 *المقالات الجديدة:*")
        lines.extend(f"{index}. {title}" for index, title in enumerate(titles, start=1))
        lines.append("")
    lines.append("---")
    lines.append(f"_تم الإرسال تلقائياً من نظام {settings.SITE_NAME}_")
    return "\n".join(lines)


class NotificationDispatcher:
    """文章完成通知分发"""

    def __init__(self, transport: Optional[WhatsAppTransport] = None):
        self.transport = transport or WhatsAppTransport()

    async def notify(self, article, recipients: Sequence[str], locale: str) -> list[DeliveryResult]:
        """
        逐个收件人发送；单个收件人失败不影响后续收件人，永不抛出
        """
        url = article_url(article)
        message = build_article_message(article, locale, url)
        cover_url = resolve_cover_url(article.cover_image)

        results: list[DeliveryResult] = []
        for number in recipients:
            try:
                if cover_url:
                    kind = await self.transport.send_media_message(number, cover_url, message)
                else:
                    await self.transport.send_message(number, message)
                    kind = "text"
                results.append(DeliveryResult(number=number, success=True, kind=kind))
            except Exception as e:
                logger.error(f"WhatsApp 通知发送失败 ({number}): {e}")
                results.append(DeliveryResult(number=number, success=False, error=str(e)))

        sent = sum(1 for r in results if r.success)
        logger.info(f"文章通知发送完成: {sent}/{len(results)} 成功")
        return results

    async def send_batch_summary(
        self,
        recipients: Sequence[str],
        generated: int,
        failed: int,
        total: int,
        titles: Sequence[str] = (),
    ) -> list[DeliveryResult]:
        """发送批次汇总，永不抛出"""
        message = build_batch_summary(generated, failed, total, titles)
        results: list[DeliveryResult] = []
        for number in recipients:
            try:
                await self.transport.send_message(number, message)
                results.append(DeliveryResult(number=number, success=True))
            except Exception as e:
                logger.error(f"批次汇总发送失败 ({number}): {e}")
                results.append(DeliveryResult(number=number, success=False, error=str(e)))
        return results

    async def test_connection(self, number: str) -> DeliveryResult:
        """发送测试消息"""
        if not self.transport.is_configured():
            return DeliveryResult(
                number=number, success=False, error="WhatsApp API credentials not configured"
            )
        try:
            await self.transport.send_message(number, build_test_message())
            return DeliveryResult(number=number, success=True)
        except Exception as e:
            logger.error(f"WhatsApp 连接测试失败: {e}")
            return DeliveryResult(number=number, success=False, error=str(e))
