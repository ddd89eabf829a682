import argparse
import asyncio
import logging
import os
import signal
from collections.abc import Mapping

import structlog
from aiohttp import web

from .config import ConfigError, resolve_config
from .proxy import ConfigErrorHandler, ProxyHandler

logger = structlog.get_logger()

# プロキシが受け付けるメソッド
PROXY_METHODS = ("GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD", "PATCH")


def configure_logging(debug: bool) -> None:
    """標準 logging と structlog を設定する

    Args:
        debug: True の場合は DEBUG レベルまで出力する
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))


def create_app(env: Mapping[str, str] | None = None) -> web.Application:
    """Web アプリケーションを作成し、ルーティングを設定する

    設定は作成時に一度だけ解決する。設定が不正な場合はすべてのリクエストに
    500 を返すアプリケーションになる

    Args:
        env: 環境変数のマッピング。None の場合は os.environ を使う

    Returns:
        設定済みの aiohttp Application インスタンス
    """
    if env is None:
        env = os.environ

    try:
        handler = ProxyHandler(resolve_config(env))
    except ConfigError as e:
        logger.error("configuration_error", error=str(e))
        handler = ConfigErrorHandler(e)

    return build_app(handler)


def build_app(handler: ProxyHandler | ConfigErrorHandler) -> web.Application:
    """すべてのパスを handler に転送するアプリケーションを作成する"""
    app = web.Application()

    for method in PROXY_METHODS:
        app.router.add_route(method, "/{path:.*}", handler.handle_proxy)

    return app


async def main():
    """メインの非同期エントリーポイント

    コマンドライン引数を解析し、サーバーを起動する
    """
    parser = argparse.ArgumentParser(
        description="Origin Proxy - Reverse proxy forwarding every request to TARGET_URL"
    )
    parser.add_argument("--port", type=int, default=8080, help="Server port (default: 8080)")
    parser.add_argument(
        "--host", type=str, default="0.0.0.0", help="Server host (default: 0.0.0.0)"
    )

    args = parser.parse_args()

    configure_logging(os.environ.get("PROXY_DEBUG") == "true")

    app = create_app()

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, args.host, args.port)

    logger.info("starting_origin_proxy", host=args.host, port=args.port)
    logger.info("proxying_requests", target=os.environ.get("TARGET_URL"))

    # シャットダウンイベント (グレースフルシャットダウン用)
    shutdown_event = asyncio.Event()

    def signal_handler(_signum, _frame):
        """シグナルを受信したらシャットダウンイベントをセットする"""
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await site.start()
        await shutdown_event.wait()
    finally:
        logger.info("shutting_down")
        await runner.cleanup()
        logger.info("server_shutdown_complete")


def run_server():
    """エントリポイント用のラッパー関数

    非同期メイン関数を実行し、KeyboardInterrupt を適切に処理する
    """
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        # Ctrl-C を優雅に処理
        pass


if __name__ == "__main__":
    run_server()
