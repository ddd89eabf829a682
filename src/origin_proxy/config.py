"""プロキシ設定の解決

環境変数からプロセス全体で共有する不変の設定を組み立てる
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

import structlog
from yarl import URL

logger = structlog.get_logger()

# 許可リスト未指定時に透過するリクエストヘッダー
DEFAULT_ALLOWED_HEADERS = frozenset(
    {
        "authorization",
        "content-type",
        "accept",
        "accept-encoding",
        "accept-language",
        "origin",
        "cache-control",
        "x-requested-with",
        "x-api-key",
        "x-auth-token",
    }
)


class ConfigError(Exception):
    """プロキシ設定のエラー"""


class MissingTargetError(ConfigError):
    """TARGET_URL が設定されていない"""

    def __init__(self):
        super().__init__("TARGET_URL environment variable is not set")


class InvalidTargetError(ConfigError):
    """TARGET_URL が絶対 URL として解釈できない"""

    def __init__(self, raw_value: str):
        self.raw_value = raw_value
        super().__init__(f"Invalid TARGET_URL: {raw_value}")


@dataclass(frozen=True)
class ProxyConfig:
    """起動時に一度だけ解決されるプロキシ設定"""

    target_url: URL
    target_raw: str = ""
    allowed_request_headers: frozenset[str] = DEFAULT_ALLOWED_HEADERS
    custom_response_headers: Mapping[str, str] = field(default_factory=dict)
    debug: bool = False

    @property
    def target_origin(self) -> tuple[str, str, int | None]:
        """比較用のオリジン (スキーム, ホスト, 実効ポート)"""
        return origin_of(self.target_url)

    @property
    def target_host(self) -> str:
        """上流へ送る Host ヘッダーの値

        既定ポートの場合はポートを含めない
        """
        host = self.target_url.raw_host or ""
        if ":" in host:
            host = f"[{host}]"
        if self.target_url.is_default_port():
            return host
        return f"{host}:{self.target_url.port}"


def origin_of(url: URL) -> tuple[str, str, int | None]:
    """URL のオリジンを比較可能なタプルで返す"""
    return (url.scheme.lower(), (url.host or "").lower(), url.port)


def parse_target_url(raw_value: str | None) -> URL:
    """TARGET_URL を検証してパースする

    Args:
        raw_value: 環境変数の生の値

    Returns:
        パース済みの絶対 URL

    Raises:
        MissingTargetError: 値が未設定または空の場合
        InvalidTargetError: http/https の絶対 URL でない場合
    """
    if not raw_value:
        raise MissingTargetError()

    try:
        url = URL(raw_value.strip())
    except (ValueError, TypeError):
        raise InvalidTargetError(raw_value) from None

    if url.scheme not in ("http", "https") or not url.host:
        raise InvalidTargetError(raw_value)
    return url


def parse_allowed_headers(raw_value: str | None) -> frozenset[str]:
    """カンマ区切りのヘッダー名を小文字の集合に変換する

    空の場合はデフォルトの許可リストを返す
    """
    if not raw_value:
        return DEFAULT_ALLOWED_HEADERS
    names = frozenset(name.strip().lower() for name in raw_value.split(",") if name.strip())
    return names or DEFAULT_ALLOWED_HEADERS


def parse_custom_headers(raw_value: str | None, debug: bool = False) -> dict[str, str]:
    """JSON オブジェクト形式のカスタムレスポンスヘッダーをパースする

    パースに失敗した場合やオブジェクトでない場合は空の辞書を返す

    Args:
        raw_value: CUSTOM_HEADERS の生の値
        debug: True の場合のみ読み捨てた理由をログに出す

    Returns:
        ヘッダー名から値へのマッピング
    """
    if not raw_value:
        return {}

    try:
        parsed = json.loads(raw_value)
    except json.JSONDecodeError as e:
        if debug:
            logger.debug("custom_headers_parse_error", error=str(e))
        return {}

    if not isinstance(parsed, dict):
        if debug:
            logger.debug("custom_headers_not_object", value_type=type(parsed).__name__)
        return {}

    # 文字列以外の値は JSON 表現に揃える
    return {
        str(name): value if isinstance(value, str) else json.dumps(value)
        for name, value in parsed.items()
    }


def resolve_config(env: Mapping[str, str]) -> ProxyConfig:
    """環境変数からプロキシ設定を解決する

    Args:
        env: 環境変数のマッピング (通常は os.environ)

    Returns:
        不変のプロキシ設定

    Raises:
        ConfigError: TARGET_URL が未設定または不正な場合
    """
    debug = env.get("PROXY_DEBUG") == "true"
    return ProxyConfig(
        target_url=parse_target_url(env.get("TARGET_URL")),
        target_raw=env["TARGET_URL"],
        allowed_request_headers=parse_allowed_headers(env.get("ALLOWED_HEADERS")),
        custom_response_headers=MappingProxyType(
            parse_custom_headers(env.get("CUSTOM_HEADERS"), debug)
        ),
        debug=debug,
    )
