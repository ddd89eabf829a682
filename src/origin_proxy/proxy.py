"""HTTP リバースプロキシハンドラー

設定された単一の上流サーバーへすべてのリクエストを転送する
"""

import aiohttp
import structlog
from aiohttp import hdrs, web
from yarl import URL

from .config import ConfigError, ProxyConfig
from .forwarder import Forwarder, UpstreamError
from .headers import build_request_headers, build_response_headers
from .redirect import rewrite_location

logger = structlog.get_logger()

CHUNK_SIZE = 64 * 1024


def upstream_url(base: URL, request_url: URL) -> URL:
    """上流のベース URL にリクエストのパスとクエリを適用する

    リクエストのパスはベース URL のパスを置き換える。
    `//` で始まるパスでも上流のスキームとホストは変わらない
    """
    return URL.build(
        scheme=base.scheme,
        authority=base.raw_authority,
        path=request_url.raw_path,
        query_string=request_url.raw_query_string,
        encoded=True,
    )


def config_error_response(error: ConfigError) -> web.Response:
    """設定エラーを表す 500 レスポンスを生成する"""
    return web.json_response(
        {"error": "Configuration Error", "message": str(error)},
        status=500,
    )


def proxy_error_response(target: str, details: str) -> web.Response:
    """上流に接続できなかったことを表す 502 レスポンスを生成する"""
    return web.json_response(
        {
            "error": "Proxy Error",
            "message": "Failed to connect to target server",
            "target": target,
            "details": details,
        },
        status=502,
    )


class ConfigErrorHandler:
    """設定が不正な場合にすべてのリクエストへエラーを返すハンドラー"""

    def __init__(self, error: ConfigError):
        self.error = error

    async def handle_proxy(self, request: web.Request) -> web.Response:
        return config_error_response(self.error)


class ProxyHandler:
    """上流サーバーへのリバースプロキシを提供するハンドラー"""

    def __init__(self, config: ProxyConfig, forwarder: Forwarder | None = None):
        """ProxyHandler を初期化する

        Args:
            config: 起動時に解決済みのプロキシ設定
            forwarder: 上流への転送を行う Forwarder。None の場合は既定の設定で作成する
        """
        self.config = config
        self.forwarder = forwarder or Forwarder()

    def _debug(self, event: str, **kw) -> None:
        if self.config.debug:
            logger.debug(event, **kw)

    async def handle_proxy(self, request: web.Request) -> web.StreamResponse:
        """リクエストを上流サーバーに転送し、レスポンスをストリーミングで返す

        Args:
            request: HTTP リクエストオブジェクト

        Returns:
            上流サーバーからのレスポンス、または接続失敗時の 502 レスポンス
        """
        target_url = upstream_url(self.config.target_url, request.rel_url)
        self._debug(
            "proxy_request", method=request.method, path=request.path, target=str(target_url)
        )

        headers = build_request_headers(
            request.headers,
            self.config.allowed_request_headers,
            self.config.target_host,
            request.remote or "unknown",
            request.scheme,
            request.host,
        )
        self._debug("request_headers", headers=dict(headers))

        body = request.content.iter_chunked(CHUNK_SIZE) if request.body_exists else None

        try:
            async with self.forwarder.forward(
                request.method, target_url, headers, body
            ) as upstream:
                return await self._relay(request, upstream)
        except UpstreamError as e:
            target = self.config.target_raw or str(self.config.target_url)
            return proxy_error_response(target, str(e))

    async def _relay(
        self, request: web.Request, upstream: aiohttp.ClientResponse
    ) -> web.StreamResponse:
        """上流のレスポンスをヘッダーを組み替えてクライアントへ中継する

        Args:
            request: クライアントからのリクエスト
            upstream: 上流のレスポンス

        Returns:
            送信済みのストリーミングレスポンス
        """
        headers = build_response_headers(upstream.headers, self.config.custom_response_headers)

        raw_location = upstream.headers.get(hdrs.LOCATION)
        location = rewrite_location(
            upstream.status,
            raw_location,
            self.config.target_origin,
            str(request.url.origin()),
        )
        if location is not None:
            if location != raw_location:
                self._debug("redirect_rewritten", original=raw_location, rewritten=location)
            headers[hdrs.LOCATION] = location

        self._debug("response", status=upstream.status, headers=dict(headers))

        response = web.StreamResponse(
            status=upstream.status, reason=upstream.reason, headers=headers
        )
        await response.prepare(request)

        try:
            async for chunk in upstream.content.iter_chunked(CHUNK_SIZE):
                await response.write(chunk)
        except ConnectionResetError:
            # クライアントが切断したら上流からの読み出しをやめる
            self._debug("client_disconnected", path=request.path)
            return response

        await response.write_eof()
        return response
