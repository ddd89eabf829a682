"""上流へのリダイレクトをプロキシ経由に書き換える"""

from yarl import URL

from .config import origin_of


def rewrite_location(
    status: int,
    location: str | None,
    target_origin: tuple[str, str, int | None],
    proxy_origin: str,
) -> str | None:
    """3xx レスポンスの Location ヘッダーを書き換える

    上流オリジンを指す絶対 URL はプロキシのオリジンに置き換える。
    別オリジンや相対パスはそのまま返す

    Args:
        status: 上流レスポンスのステータスコード
        location: 上流の Location ヘッダー値
        target_origin: 上流のオリジン
        proxy_origin: クライアントがアクセスしたプロキシのオリジン (例: http://localhost:8080)

    Returns:
        最終的な Location の値。対象外の場合は None
    """
    if not 300 <= status < 400 or not location:
        return None

    try:
        url = URL(location)
    except ValueError:
        return location

    # スキームとホストを持たないものは相対パスとして扱う
    if not url.scheme or not url.host:
        return location
    if origin_of(url) != target_origin:
        return location

    rewritten = proxy_origin.rstrip("/") + url.raw_path
    if url.raw_query_string:
        rewritten += "?" + url.raw_query_string
    return rewritten
