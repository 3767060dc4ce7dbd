"""パイプラインの例外階層と、ユーザー向けエラーメッセージ生成。"""

from __future__ import annotations

from typing import Optional

from PIL import Image, UnidentifiedImageError


class PurePixelError(Exception):
    """パイプライン由来の例外の基底クラス。"""

    default_message = "処理に失敗しました"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)


class DecodeError(PurePixelError):
    """入力バイト列を画像として読み込めない、またはデコードがタイムアウトした。"""

    default_message = "画像の読み込みに失敗しました"


class SurfaceError(PurePixelError):
    """描画先サーフェスを確保できない。"""

    default_message = "描画用サーフェスを作成できません"


class EncodeError(PurePixelError):
    """指定形式とPNGフォールバックの両方でエンコードに失敗した。"""

    default_message = "画像のエンコードに失敗しました"


class ReadError(PurePixelError):
    """入力ファイルを読み取れない。"""

    default_message = "ファイルの読み取りに失敗しました"


class DispatchError(PurePixelError):
    """バックグラウンド実行コンテキストが利用できない、または途中で破棄された。"""

    default_message = "バックグラウンド処理が利用できません"


_ERROR_TYPES = {
    cls.__name__: cls
    for cls in (PurePixelError, DecodeError, SurfaceError, EncodeError, ReadError, DispatchError)
}


def error_from_name(error_type: Optional[str], message: Optional[str]) -> PurePixelError:
    """ワーカー応答のエラー種別名から例外を復元する。

    未知の種別は基底クラスで包む。
    """
    cls = _ERROR_TYPES.get(error_type or "", PurePixelError)
    return cls(message)


def describe_error(error: BaseException) -> str:
    """
    例外から表示用のエラーメッセージを生成します

    Args:
        error: 例外オブジェクト

    Returns:
        str: 日本語エラーメッセージ
    """
    error_msg = str(error)

    if isinstance(error, PurePixelError):
        return error_msg

    # 画像関連エラー
    if isinstance(error, UnidentifiedImageError):
        return f"画像ファイルとして認識できません: {error_msg}"
    if isinstance(error, Image.DecompressionBombError):
        return f"画像が大きすぎます（圧縮爆弾の可能性）: {error_msg}"

    # ファイル関連エラー
    if isinstance(error, FileNotFoundError):
        return f"ファイルが見つかりません: {error_msg}"
    if isinstance(error, PermissionError):
        return f"アクセス権限がありません: {error_msg}"
    if isinstance(error, OSError):
        if error.errno == 28:  # ENOSPC
            return "ディスク容量が不足しています"
        return f"システムエラー: {error_msg}"

    if isinstance(error, MemoryError):
        return "メモリ不足エラー: 画像が大きすぎるか、使用可能なメモリが不足しています"
    if isinstance(error, ValueError):
        return f"無効な値: {error_msg}"

    return f"{type(error).__name__}: {error_msg}" if error_msg else "処理に失敗しました"
