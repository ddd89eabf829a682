"""リクエスト / レスポンスヘッダーの組み立て

上流へ送るヘッダーとクライアントへ返すヘッダーをそれぞれ新しく構築する。
`CIMultiDict` の `setdefault` を「未設定なら設定」、`[]=` を「常に上書き」として使い分ける
"""

from collections.abc import Iterable, Mapping

from aiohttp import hdrs
from multidict import CIMultiDict

# 上流レスポンスから透過する標準ヘッダー
DEFAULT_RESPONSE_HEADERS = (
    "content-type",
    "content-length",
    "content-range",
    "accept-ranges",
    "cache-control",
    "etag",
    "last-modified",
    "location",
)

# ボディを復号せずに中継するため、エンコーディングも合わせて透過する
BODY_ENCODING_HEADERS = ("content-encoding",)

CORS_DEFAULTS = (
    (hdrs.ACCESS_CONTROL_ALLOW_ORIGIN, "*"),
    (hdrs.ACCESS_CONTROL_ALLOW_METHODS, "GET, POST, PUT, DELETE, OPTIONS, HEAD, PATCH"),
    (
        hdrs.ACCESS_CONTROL_ALLOW_HEADERS,
        "Authorization, Content-Type, X-Requested-With, X-API-Key, X-Auth-Token",
    ),
)


def _copy_custom_x_headers(source: Mapping[str, str], target: CIMultiDict[str]) -> None:
    """x- で始まるヘッダーを未設定のものだけコピーする (各キーの先頭の値を使う)"""
    for name, value in source.items():
        if name.lower().startswith("x-"):
            target.setdefault(name, value)


def build_request_headers(
    inbound_headers: Mapping[str, str],
    allowed_headers: Iterable[str],
    target_host: str,
    client_ip: str,
    scheme: str,
    host: str,
) -> CIMultiDict[str]:
    """上流へ送るリクエストヘッダーを構築する

    Args:
        inbound_headers: クライアントからのリクエストヘッダー
        allowed_headers: 透過を許可する小文字のヘッダー名
        target_host: 上流の Host ヘッダー値
        client_ip: クライアントの IP アドレス
        scheme: クライアントが使ったスキーム
        host: クライアントが使った Host

    Returns:
        上流リクエスト用のヘッダー
    """
    headers: CIMultiDict[str] = CIMultiDict()

    for name in sorted(allowed_headers):
        value = inbound_headers.get(name)
        if value:
            headers.setdefault(name, value)

    # 許可リストに関係なくカスタムヘッダーは常に透過する
    _copy_custom_x_headers(inbound_headers, headers)

    headers[hdrs.X_FORWARDED_FOR] = client_ip
    headers[hdrs.X_FORWARDED_PROTO] = scheme
    headers[hdrs.X_FORWARDED_HOST] = host
    headers[hdrs.HOST] = target_host
    return headers


def build_response_headers(
    upstream_headers: Mapping[str, str],
    custom_headers: Mapping[str, str],
) -> CIMultiDict[str]:
    """クライアントへ返すレスポンスヘッダーを構築する

    優先順位は カスタム設定 > 上流からの透過 > CORS デフォルト

    Args:
        upstream_headers: 上流レスポンスのヘッダー
        custom_headers: CUSTOM_HEADERS で設定されたヘッダー

    Returns:
        クライアントへのレスポンス用ヘッダー
    """
    headers: CIMultiDict[str] = CIMultiDict()

    for name in DEFAULT_RESPONSE_HEADERS + BODY_ENCODING_HEADERS:
        value = upstream_headers.get(name)
        if value:
            headers[name] = value

    _copy_custom_x_headers(upstream_headers, headers)

    # 同名ヘッダーは複数値も含めて置き換える
    for name, value in custom_headers.items():
        headers[name] = value

    for name, value in CORS_DEFAULTS:
        headers.setdefault(name, value)
    return headers
