import asyncio
from unittest.mock import AsyncMock

import numpy as np
import pytest
from PIL import Image

from promptseg import (
    InvalidStateError,
    Label,
    Point,
    SessionBusyError,
    SessionController,
    SessionState,
)

from conftest import empty_masks, point_blobs, settle


@pytest.mark.asyncio
async def test_encode_sends_letterboxed_image_once(make_session, backend):
    session = await make_session()
    assert session.state == SessionState.READY
    assert session.encoded
    await session.encode()
    assert backend.encode_calls == [((1024, 1024, 3), (1024, 1024))]


@pytest.mark.asyncio
async def test_single_point_from_display_coordinates(make_session, backend):
    session = await make_session()
    x, y = session.to_logical(400, 400, (800, 800))
    assert (x, y) == (512, 512)

    candidates = await session.add_point(Point(x, y, Label.POSITIVE))

    request = backend.requests[0]
    assert request.request_id == "interactive-1"
    assert request.prompt.to_tuples() == [(512, 512, 1)]
    assert request.mask_input is None
    assert session.state == SessionState.HAS_CANDIDATES
    assert len(candidates) == 3
    assert session.selected_index == 1
    assert session.previous_mask is candidates[1].raster


@pytest.mark.asyncio
async def test_refinement_sends_previous_mask(make_session, backend):
    session = await make_session()
    await session.add_point(Point(512, 512))
    first = session.previous_mask

    await session.add_point(Point(540, 540, Label.NEGATIVE))

    request = backend.requests[1]
    assert request.prompt.to_tuples() == [(512, 512, 1), (540, 540, 0)]
    assert request.mask_input is first


@pytest.mark.asyncio
async def test_select_candidate_changes_refinement_mask_without_decoding(make_session, backend):
    session = await make_session()
    candidates = await session.add_point(Point(512, 512))

    session.select_candidate(2)

    assert len(backend.requests) == 1
    assert session.selected_index == 2
    assert session.previous_mask is candidates[2].raster

    await session.add_point(Point(530, 530))
    assert backend.requests[1].mask_input is candidates[2].raster


@pytest.mark.asyncio
async def test_select_candidate_rejects_bad_state_and_index(make_session):
    session = await make_session()
    with pytest.raises(InvalidStateError):
        session.select_candidate(0)
    await session.add_point(Point(512, 512))
    with pytest.raises(IndexError):
        session.select_candidate(3)
    assert session.selected_index == 1


@pytest.mark.asyncio
async def test_undo_redecodes_without_previous_mask(make_session, backend):
    session = await make_session()
    await session.add_point(Point(512, 512))
    await session.add_point(Point(540, 540))

    await session.undo_last_point()

    request = backend.requests[-1]
    assert len(backend.requests) == 3
    assert request.prompt.to_tuples() == [(512, 512, 1)]
    assert request.mask_input is None
    assert session.state == SessionState.HAS_CANDIDATES


@pytest.mark.asyncio
async def test_undo_last_point_returns_to_ready(make_session, backend):
    session = await make_session()
    await session.add_point(Point(512, 512))

    assert await session.undo_last_point() is None

    assert len(backend.requests) == 1
    assert session.state == SessionState.READY
    assert session.active_candidates() is None
    assert session.previous_mask is None
    assert not session.active_prompt
    assert session.commit() is None
    assert len(session.registry) == 0


@pytest.mark.asyncio
async def test_box_prompt(make_session, backend):
    session = await make_session()
    session.begin_box(100, 900)
    assert session.update_box(250, 800).w == 150

    await session.finish_box(400, 700)

    request = backend.requests[-1]
    assert request.prompt.to_tuples() == [(100, 700, 2), (400, 900, 3)]
    assert request.mask_input is None
    assert session.active_prompt.is_box


@pytest.mark.asyncio
async def test_box_replaces_points_and_drops_previous_mask(make_session, backend):
    session = await make_session()
    await session.add_point(Point(512, 512))
    session.begin_box(100, 100)
    await session.finish_box(300, 300)
    assert backend.requests[-1].mask_input is None
    assert len(session.active_prompt) == 2


@pytest.mark.asyncio
async def test_commit_then_restore(make_session, backend):
    session = await make_session()
    await session.add_point(Point(512, 512))
    origin = session.active_prompt

    polygon = session.commit()

    assert polygon is not None
    assert polygon.ring[0] == polygon.ring[-1]
    assert polygon.origin_prompt == origin
    assert session.state == SessionState.READY
    assert not session.active_prompt
    assert session.committed_polygons() == [polygon]

    restored = await session.restore(512, 512)

    assert restored is polygon
    assert polygon.id not in session.registry
    assert session.active_prompt == origin
    assert backend.requests[-1].prompt == origin
    assert backend.requests[-1].mask_input is None
    assert session.state == SessionState.HAS_CANDIDATES


@pytest.mark.asyncio
async def test_restore_then_commit_keeps_origin_prompt(make_session):
    session = await make_session()
    await session.add_point(Point(512, 512))
    await session.add_point(Point(530, 520))
    first = session.commit()

    await session.restore(512, 512)
    second = session.commit()

    assert second.id != first.id
    assert second.origin_prompt == first.origin_prompt
    assert len(session.registry) == 1


@pytest.mark.asyncio
async def test_restore_misses_and_active_selection(make_session):
    session = await make_session()
    await session.add_point(Point(512, 512))
    session.commit()

    assert await session.restore(50, 50) is None

    await session.add_point(Point(900, 900))
    assert await session.restore(512, 512) is None
    assert len(session.registry) == 1


@pytest.mark.asyncio
async def test_restore_auto_polygon_leaves_session_ready(make_session, backend):
    session = await make_session()
    polygon = session.registry.create(((400.0, 400.0), (600.0, 400.0), (600.0, 600.0), (400.0, 600.0)))

    assert await session.restore(500, 500) is polygon

    assert backend.requests == []
    assert session.state == SessionState.READY
    assert len(session.registry) == 0


@pytest.mark.asyncio
async def test_click_restores_or_adds(make_session, backend):
    session = await make_session()
    await session.click(Point(512, 512))
    polygon = session.commit()

    result = await session.click(Point(512, 512))
    assert result is polygon
    assert session.state == SessionState.HAS_CANDIDATES

    # With an active prompt a click inside a polygon is just another point.
    session.commit()
    await session.click(Point(100, 100))
    await session.click(Point(512, 512))
    assert len(session.active_prompt) == 2
    assert len(session.registry) == 1


@pytest.mark.asyncio
async def test_empty_mask_commit_is_noop(make_session, backend):
    backend.masks = empty_masks
    session = await make_session()
    await session.add_point(Point(512, 512))

    assert session.commit() is None

    assert session.state == SessionState.HAS_CANDIDATES
    assert len(session.registry) == 0
    assert len(session.active_prompt) == 1


@pytest.mark.asyncio
async def test_commit_without_candidates_returns_none(make_session):
    session = await make_session()
    assert session.commit() is None
    assert session.state == SessionState.READY


@pytest.mark.asyncio
async def test_edits_rejected_while_decode_outstanding(make_session, backend):
    session = await make_session()
    backend.hold = True
    task = asyncio.create_task(session.add_point(Point(512, 512)))
    await settle()
    assert session.state == SessionState.AWAITING_DECODE

    with pytest.raises(SessionBusyError):
        await session.add_point(Point(600, 600))
    with pytest.raises(SessionBusyError):
        session.commit()
    with pytest.raises(SessionBusyError):
        await session.undo_last_point()

    backend.release("interactive-1")
    await task
    assert session.state == SessionState.HAS_CANDIDATES
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_response_after_new_image_is_dropped(make_session, backend, gray_image):
    session = await make_session()
    backend.hold = True
    task = asyncio.create_task(session.add_point(Point(512, 512)))
    await settle()

    session.load_image(gray_image)
    backend.release_all()

    assert await task is None
    assert session.stale_responses == 1
    assert session.state == SessionState.IDLE
    assert session.active_candidates() is None
    assert session.previous_mask is None


@pytest.mark.asyncio
async def test_encode_failure_then_retry(make_session, backend):
    backend.fail_encode = True
    session = await make_session(encode=False)
    await session.encode()
    assert session.state == SessionState.FAILED
    assert session.last_error == "encode failed"
    assert not session.encoded

    backend.fail_encode = False
    await session.encode()
    assert session.state == SessionState.READY
    assert session.last_error is None


@pytest.mark.asyncio
async def test_decode_failure_keeps_prompt_and_allows_retry(make_session, backend):
    session = await make_session()
    backend.fail_decode = True
    assert await session.add_point(Point(512, 512)) is None
    assert session.state == SessionState.FAILED
    assert "interactive-1" in session.last_error
    assert len(session.active_prompt) == 1

    backend.fail_decode = False
    await session.add_point(Point(520, 520))
    assert session.state == SessionState.HAS_CANDIDATES
    assert session.last_error is None
    assert len(session.active_prompt) == 2


@pytest.mark.asyncio
async def test_commands_before_encoding(make_session, backend):
    with pytest.raises(InvalidStateError):
        await SessionController(backend).encode()
    with pytest.raises(InvalidStateError):
        SessionController(backend).to_logical(1, 1, (10, 10))

    session = await make_session(encode=False)
    with pytest.raises(InvalidStateError):
        await session.add_point(Point(1, 1))
    with pytest.raises(InvalidStateError):
        await session.restore(1, 1)
    with pytest.raises(InvalidStateError):
        await session.segment_all()
    with pytest.raises(InvalidStateError):
        session.clear()
    assert backend.requests == []


@pytest.mark.asyncio
async def test_clear_drops_everything_but_encoding(make_session, backend):
    session = await make_session()
    await session.add_point(Point(512, 512))
    session.commit()
    await session.add_point(Point(100, 100))
    generation = session.generation

    session.clear()

    assert session.generation == generation + 1
    assert session.state == SessionState.READY
    assert session.encoded
    assert len(session.registry) == 0
    assert not session.active_prompt
    assert session.active_candidates() is None
    assert len(backend.encode_calls) == 1


@pytest.mark.asyncio
async def test_load_image_resets_session(make_session, gray_image):
    session = await make_session()
    await session.add_point(Point(512, 512))
    session.commit()

    session.load_image(gray_image)

    assert session.state == SessionState.IDLE
    assert not session.encoded
    assert len(session.registry) == 0


@pytest.mark.asyncio
async def test_listeners_see_every_transition(make_session):
    session = await make_session()
    snapshots = []
    session.subscribe(snapshots.append)

    await session.add_point(Point(512, 512))
    session.select_candidate(0)

    assert [s.state for s in snapshots] == [
        SessionState.AWAITING_DECODE,
        SessionState.HAS_CANDIDATES,
        SessionState.HAS_CANDIDATES,
    ]
    assert snapshots[1].selected_index == 1
    assert snapshots[2].selected_index == 0
    assert snapshots[1].scores == (0.5, 0.8, 0.3)
    assert snapshots[1].has_previous_mask


@pytest.mark.asyncio
async def test_export_maps_rings_back_to_source(make_session):
    session = await make_session(image=Image.new("RGB", (2048, 1024), (10, 20, 30)))
    session.registry.create(((0.0, 256.0), (1024.0, 256.0), (1024.0, 768.0)))

    exported = session.export()

    assert exported[0]["ring"] == [[0.0, 256.0], [1024.0, 256.0], [1024.0, 768.0]]
    assert exported[0]["source_ring"] == [[0, 0], [2048, 0], [2048, 1024]]
    assert exported[0]["points"] == []


@pytest.mark.asyncio
async def test_render_and_crop(make_session):
    session = await make_session()
    with pytest.raises(InvalidStateError):
        session.crop()

    await session.add_point(Point(512, 512))
    rendered = session.render()
    crop = session.crop()

    assert rendered.size == (1024, 1024)
    assert crop.mode == "RGBA"
    assert crop.getpixel((512, 512))[3] == 255
    assert crop.getpixel((10, 10))[3] == 0


@pytest.mark.asyncio
async def test_load_image_accepts_arrays(make_session):
    session = await make_session(image=np.zeros((100, 200, 3), dtype=np.uint8))
    assert session.image.size == (1024, 1024)
    assert session.mapper.box.y == 256


@pytest.mark.asyncio
async def test_unexpected_decode_error_does_not_leave_session_busy(make_session, backend):
    def broken(request):
        raise TypeError("scores missing")

    session = await make_session()
    backend.masks = broken
    with pytest.raises(TypeError):
        await session.add_point(Point(512, 512))
    assert session.state == SessionState.FAILED
    assert session.last_error == "scores missing"

    backend.masks = point_blobs
    await session.add_point(Point(520, 520))
    assert session.state == SessionState.HAS_CANDIDATES


@pytest.mark.asyncio
async def test_unexpected_encode_error_does_not_leave_session_encoding(make_session, backend):
    session = await make_session(encode=False)
    backend.encode_image = AsyncMock(side_effect=OSError("disk full"))
    with pytest.raises(OSError):
        await session.encode()
    assert session.state == SessionState.FAILED
    assert not session.encoded

    del backend.encode_image
    await session.encode()
    assert session.state == SessionState.READY
