"""Internal notification service (Telegram alerts)."""

from typing import Optional

import httpx

from number_pool.core.config import settings
from number_pool.core.logging import get_logger
from number_pool.schemas.pool import PoolStats

logger = get_logger(__name__)


class NotificationService:
    """Service for ops team notifications (Telegram)."""

    def __init__(self, bot_token: Optional[str] = None, alerts_chat_id: Optional[str] = None):
        self.bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
        self.alerts_chat_id = (
            alerts_chat_id if alerts_chat_id is not None else settings.telegram_alerts_chat_id
        )
        self.base_url = f"https://api.telegram.org/bot{self.bot_token}"

    async def _send_message(
        self,
        chat_id: str,
        text: str,
        parse_mode: str = "HTML",
    ) -> bool:
        """Send a message to a Telegram chat."""
        if not self.bot_token or not chat_id:
            logger.warning("telegram_not_configured")
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    f"{self.base_url}/sendMessage",
                    json={
                        "chat_id": chat_id,
                        "text": text,
                        "parse_mode": parse_mode,
                    },
                    timeout=10.0,
                )
                response.raise_for_status()
                return True
        except httpx.HTTPError as e:
            logger.error("telegram_send_failed", error=str(e))
            return False

    async def alert_critical(
        self,
        title: str,
        message: str,
        error: Optional[str] = None,
    ) -> bool:
        """Send critical alert to ops team."""
        text = f"<b>🚨 {title}</b>\n\n{message}"

        if error:
            text += f"\n\n<b>Error:</b>\n<pre>{error[:500]}</pre>"

        success = await self._send_message(self.alerts_chat_id, text)
        if success:
            logger.info("critical_alert_sent", title=title)
        return success

    async def alert_low_inventory(self, stats: PoolStats, threshold: int) -> bool:
        """Warn that the pool is running out and numbers need to be bought."""
        lines = [
            f"Only <b>{stats.available}</b> number(s) available (threshold {threshold}).",
            "",
            f"Total: {stats.total} | Reserved: {stats.reserved} | "
            f"Assigned: {stats.assigned} | Released: {stats.released}",
        ]
        for region, region_stats in sorted(stats.by_region.items()):
            lines.append(f"{region}: {region_stats.available}/{region_stats.total} available")
        lines.append("")
        lines.append("Purchase more numbers and add them to phone_number_pool.")

        return await self.alert_critical("Number Pool Running Low", "\n".join(lines))

    async def alert_provisioning_failed(
        self,
        item_id: str,
        tenant_id: str,
        error: str,
    ) -> bool:
        """Alert when a provisioning request has given up and needs an operator."""
        message = (
            f"Provisioning request <code>{item_id}</code> for tenant "
            f"<code>{tenant_id}</code> will not be retried again."
        )
        return await self.alert_critical("Number Provisioning Failed", message, error=error)
