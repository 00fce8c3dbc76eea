from __future__ import annotations
"""WebUntis 鏡面顯示器資料抓取核心模組"""
from typing import Any, Dict, Optional

from untis_mirror_core.abc.api_client_abc import BaseApiClientABC
from untis_mirror_core.config import Settings
from untis_mirror_core.service.fetch_service import FetchService, SendFn
from untis_mirror_core.utils.logger import get_logger, set_log_level

__version__ = "0.1.0"

logger = get_logger(logger_level="INFO")


class UntisMirrorCore:
    """資料抓取核心的統一入口點

    此類別提供以下功能：
    1. 生命週期
       - start(): 啟動背景快取清除
       - stop(): 停止背景快取清除
    2. 通知處理
       - socket_notification_received(): 接收 FETCH_DATA，透過 send 回傳 GOT_DATA
    """

    def __init__(self, api: BaseApiClientABC, send: SendFn, settings: Optional[Settings] = None):
        """
        Args:
            api: 上游 API client
            send: send(notification, payload)，用於送出 GOT_DATA
            settings: 執行期設定，未提供時由環境變數載入
        """
        self.settings = settings or Settings.from_env()
        set_log_level(self.settings.log_level)
        self.service = FetchService(api, send, settings=self.settings)

    async def start(self) -> None:
        self.service.cache.start_sweeper()
        logger.debug("🧹 已啟動快取清除")

    async def stop(self) -> None:
        await self.service.cache.stop_sweeper()

    async def socket_notification_received(self, notification: str, payload: Dict[str, Any]) -> Optional[int]:
        """處理前端通知

        Args:
            notification: 通知名稱，目前只處理 "FETCH_DATA"
            payload: 模組設定；可帶 "id" 作為請求者識別碼

        Returns:
            送出的 GOT_DATA 數量；未知通知回傳 None
        """
        if notification != "FETCH_DATA":
            logger.debug(f"略過未知通知：{notification}")
            return None
        identifier = payload.get("id")
        return await self.service.handle_fetch_data(payload, identifier=str(identifier) if identifier is not None else None)


__all__ = ["UntisMirrorCore", "FetchService", "Settings", "__version__"]
