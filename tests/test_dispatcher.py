from __future__ import annotations

import threading

import pytest

from pure_pixel.dimension_planner import ScaleResize
from pure_pixel.dispatcher import (
    BackgroundDispatcher,
    ResponseKind,
    TransformRequest,
    TransformResponse,
    execute_request,
)
from pure_pixel.errors import DecodeError, DispatchError
from pure_pixel.format_policy import FallbackReason, ImageFormat, ProcessMode


def _request(data: bytes, request_id: str = "req-1", **overrides) -> TransformRequest:
    values = dict(
        kind=ProcessMode.CONVERT,
        request_id=request_id,
        data=data,
        source_mime="image/png",
        target_format=ImageFormat.PNG,
        compression_enabled=False,
    )
    values.update(overrides)
    return TransformRequest(**values)


def test_execute_request_posts_progress_then_success(make_image_bytes) -> None:
    posted: list[TransformResponse] = []
    execute_request(_request(make_image_bytes(), resize=ScaleResize(0.5)), posted.append)

    progress = [r.progress for r in posted if r.kind == ResponseKind.PROGRESS]
    assert progress == [10, 30, 50, 70, 90, 100]
    assert posted[-1].kind == ResponseKind.SUCCESS
    assert posted[-1].result.width == 32
    assert all(r.request_id == "req-1" for r in posted)


def test_execute_request_reports_errors_as_messages() -> None:
    posted: list[TransformResponse] = []
    execute_request(_request(b"broken"), posted.append)

    assert posted[0].progress == 10
    assert posted[-1].kind == ResponseKind.ERROR
    assert posted[-1].error_type == "DecodeError"
    assert posted[-1].error


def test_execute_request_applies_capability_fallback(make_image_bytes) -> None:
    posted: list[TransformResponse] = []
    execute_request(
        _request(make_image_bytes(), target_format=ImageFormat.AVIF),
        posted.append,
        probe=lambda fmt: False,
    )
    result = posted[-1].result
    assert result.output_format == ImageFormat.WEBP
    assert result.fallbacks == (FallbackReason.AVIF_UNSUPPORTED,)


def test_submit_resolves_future_with_monotonic_progress(make_image_bytes) -> None:
    seen: list[int] = []
    with BackgroundDispatcher(workers=2) as dispatcher:
        future = dispatcher.submit(_request(make_image_bytes()), on_progress=seen.append)
        result = future.result(timeout=10)

    assert result.output_format == ImageFormat.PNG
    assert seen == [10, 30, 50, 70, 90, 100]


def test_submit_rejects_with_engine_error_class() -> None:
    with BackgroundDispatcher(workers=1) as dispatcher:
        future = dispatcher.submit(_request(b"broken"))
        with pytest.raises(DecodeError):
            future.result(timeout=10)


def test_many_concurrent_requests_are_correlated_by_id(make_image_bytes) -> None:
    sizes = {f"req-{n}": (10 + n, 5 + n) for n in range(8)}
    with BackgroundDispatcher(workers=3) as dispatcher:
        futures = {
            request_id: dispatcher.submit(_request(make_image_bytes(size), request_id))
            for request_id, size in sizes.items()
        }
        results = {request_id: f.result(timeout=10) for request_id, f in futures.items()}

    for request_id, size in sizes.items():
        assert (results[request_id].width, results[request_id].height) == size


def _blocking_handler(started: threading.Event, release: threading.Event):
    def handler(request, post):
        post(TransformResponse(kind=ResponseKind.PROGRESS, request_id=request.request_id, progress=10))
        started.set()
        release.wait(5)
        post(TransformResponse(kind=ResponseKind.PROGRESS, request_id=request.request_id, progress=50))

    return handler


def test_duplicate_in_flight_id_fails() -> None:
    started, release = threading.Event(), threading.Event()
    dispatcher = BackgroundDispatcher(workers=1, handler=_blocking_handler(started, release))
    try:
        first = dispatcher.submit(_request(b"x", "same"))
        second = dispatcher.submit(_request(b"x", "same"))
        with pytest.raises(DispatchError):
            second.result(timeout=1)
        assert not first.done()
    finally:
        release.set()
        dispatcher.close()


def test_close_abandons_pending_requests_without_further_callbacks() -> None:
    started, release = threading.Event(), threading.Event()
    seen: list[int] = []
    dispatcher = BackgroundDispatcher(workers=1, handler=_blocking_handler(started, release))

    future = dispatcher.submit(_request(b"x"), on_progress=seen.append)
    assert started.wait(5)
    dispatcher.close()
    release.set()

    with pytest.raises(DispatchError):
        future.result(timeout=1)
    assert 50 not in seen
    assert dispatcher.pending_count == 0
    assert dispatcher.is_available is False


def test_submit_after_close_returns_failed_future() -> None:
    dispatcher = BackgroundDispatcher(workers=1)
    dispatcher.close()
    future = dispatcher.submit(_request(b"x"))
    with pytest.raises(DispatchError):
        future.result(timeout=1)


def test_close_racing_with_submit_fails_every_future_cleanly() -> None:
    started, release = threading.Event(), threading.Event()
    dispatcher = BackgroundDispatcher(workers=2, handler=_blocking_handler(started, release))
    futures = []
    errors: list[BaseException] = []
    go = threading.Event()

    def submitter(prefix: str) -> None:
        go.wait(5)
        for n in range(50):
            try:
                futures.append(dispatcher.submit(_request(b"x", f"{prefix}-{n}")))
            except BaseException as e:  # submit 自体は例外を送出しない
                errors.append(e)

    threads = [threading.Thread(target=submitter, args=(f"t{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    go.set()
    dispatcher.close()
    release.set()
    for thread in threads:
        thread.join(5)

    assert errors == []
    assert len(futures) == 200
    for future in futures:
        with pytest.raises(DispatchError):
            future.result(timeout=1)
