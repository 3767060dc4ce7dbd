from __future__ import annotations

import errno

from PIL import UnidentifiedImageError

from pure_pixel.errors import (
    DecodeError,
    DispatchError,
    PurePixelError,
    describe_error,
    error_from_name,
)


def test_default_messages() -> None:
    assert str(DecodeError()) == "画像の読み込みに失敗しました"
    assert str(DispatchError("止まりました")) == "止まりました"


def test_error_from_name_restores_class() -> None:
    restored = error_from_name("DecodeError", "壊れています")
    assert isinstance(restored, DecodeError)
    assert str(restored) == "壊れています"

    unknown = error_from_name("RuntimeError", "boom")
    assert type(unknown) is PurePixelError
    assert str(unknown) == "boom"

    assert isinstance(error_from_name(None, None), PurePixelError)


def test_describe_error_messages() -> None:
    assert describe_error(DecodeError("読めません")) == "読めません"
    assert describe_error(UnidentifiedImageError("x")).startswith("画像ファイルとして認識できません")
    assert describe_error(FileNotFoundError("a.png")).startswith("ファイルが見つかりません")
    assert describe_error(OSError(errno.ENOSPC, "full")) == "ディスク容量が不足しています"
    assert describe_error(MemoryError()).startswith("メモリ不足エラー")
    assert describe_error(ValueError("bad")) == "無効な値: bad"
    assert describe_error(RuntimeError("boom")) == "RuntimeError: boom"
