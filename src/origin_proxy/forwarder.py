"""上流サーバーへのリクエスト転送"""

import asyncio
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager

import aiohttp
import structlog
from aiohttp import hdrs
from yarl import URL

logger = structlog.get_logger()

# 接続の確立だけを制限し、ボディの読み出し時間には上限を設けない
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=30)


class UpstreamError(Exception):
    """上流サーバーに接続できなかった"""


class Forwarder:
    """リクエストを上流サーバーへ転送する

    接続はリクエストごとに開き、レスポンスの読み出しが終わった時点で閉じる
    """

    def __init__(self, timeout: aiohttp.ClientTimeout | None = None):
        """Forwarder を初期化する

        Args:
            timeout: 上流リクエストのタイムアウト。None の場合は DEFAULT_TIMEOUT
        """
        self.timeout = timeout or DEFAULT_TIMEOUT

    @asynccontextmanager
    async def forward(
        self,
        method: str,
        url: URL,
        headers: Mapping[str, str],
        body: AsyncIterator[bytes] | None = None,
    ) -> AsyncIterator[aiohttp.ClientResponse]:
        """上流へリクエストを送り、レスポンスを返す

        リダイレクトは追従せず 3xx をそのまま返す。
        ボディは復号せずに上流が送ったバイト列のまま読み出せる

        Args:
            method: HTTP メソッド
            url: 上流の URL
            headers: 上流へ送るヘッダー
            body: リクエストボディのチャンク。ボディがない場合は None

        Yields:
            上流のレスポンス

        Raises:
            UpstreamError: DNS 解決、接続、TLS、タイムアウトのいずれかに失敗した場合
        """
        async with aiohttp.ClientSession(
            auto_decompress=False,
            skip_auto_headers=(hdrs.ACCEPT_ENCODING, hdrs.CONTENT_TYPE),
            timeout=self.timeout,
        ) as session:
            try:
                resp = await session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    data=body,
                    allow_redirects=False,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                message = str(e) or e.__class__.__name__
                logger.error("upstream_connect_error", url=str(url), error=message)
                raise UpstreamError(message) from e

            async with resp:
                yield resp
