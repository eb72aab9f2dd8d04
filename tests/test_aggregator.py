import asyncio

import pytest

from imobot.aggregator import MessageAggregator
from imobot.events import extract_push_name, extract_text
from imobot.intent import IntentClassifier
from imobot.models import ConversationKey

DELAY = 0.1


def _event(text: str, phone: str = "5547999990000@s.whatsapp.net", instance: str = "inst-1", **data) -> dict:
    return {
        "event": "messages.upsert",
        "data": {
            "key": {"remoteJid": phone, "id": f"id-{text[:8]}", "fromMe": False},
            "instanceId": instance,
            "pushName": data.pop("push_name", "Ana"),
            "message": {"conversation": text},
            **data,
        },
    }


def _image_event(phone: str = "5547999990000@s.whatsapp.net") -> dict:
    return {
        "data": {
            "key": {"remoteJid": phone, "id": "img-1"},
            "instanceId": "inst-1",
            "message": {"imageMessage": {"mimetype": "image/jpeg", "caption": "olha essa"}, "base64": "aGVsbG8="},
        }
    }


class Recorder:
    def __init__(self) -> None:
        self.events: list[dict] = []

    async def __call__(self, event: dict) -> None:
        self.events.append(event)

    @property
    def texts(self) -> list[str]:
        return [extract_text(event) for event in self.events]


@pytest.mark.asyncio
async def test_rapid_messages_flush_once_in_arrival_order():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    for text in ("bom dia", "tudo bem?", "quero alugar"):
        assert await aggregator.submit(_event(text), recorder) is True
        await asyncio.sleep(DELAY / 5)

    assert recorder.events == []
    await asyncio.sleep(DELAY * 3)

    assert recorder.texts == ["bom dia\ntudo bem?\nquero alugar"]


@pytest.mark.asyncio
async def test_messages_spaced_beyond_window_flush_separately():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("primeira"), recorder)
    await asyncio.sleep(DELAY * 3)
    await aggregator.submit(_event("segunda"), recorder)
    await asyncio.sleep(DELAY * 3)

    assert recorder.texts == ["primeira", "segunda"]


@pytest.mark.asyncio
async def test_media_bypasses_buffer_even_with_pending_text():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    assert await aggregator.submit(_event("oi"), recorder) is True
    assert await aggregator.submit(_image_event(), recorder) is False

    assert len(recorder.events) == 1
    assert "imageMessage" in recorder.events[0]["data"]["message"]

    await asyncio.sleep(DELAY * 3)
    assert recorder.texts[-1] == "oi"


@pytest.mark.asyncio
async def test_unkeyed_and_blank_events_bypass():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    unkeyed = {"data": {"message": {"conversation": "oi"}}}
    blank = _event("   ")

    assert await aggregator.submit(unkeyed, recorder) is False
    assert await aggregator.submit(blank, recorder) is False
    assert recorder.events == [unkeyed, blank]
    assert aggregator.pending_keys() == []


@pytest.mark.asyncio
async def test_phone_formats_share_one_buffer():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("um", phone="5547999990000@s.whatsapp.net"), recorder)
    await aggregator.submit(_event("dois", phone="5547999990000@lid"), recorder)

    assert aggregator.pending_keys() == [ConversationKey("inst-1", "5547999990000")]
    assert aggregator.stats() == {"active_buffers": 1, "total_pending_messages": 2}

    await asyncio.sleep(DELAY * 3)
    assert recorder.texts == ["um\ndois"]


@pytest.mark.asyncio
async def test_last_event_is_merge_template():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("um", push_name="Ana"), recorder)
    await aggregator.submit(_event("dois", push_name="Ana Souza"), recorder)
    await asyncio.sleep(DELAY * 3)

    assert extract_push_name(recorder.events[0]) == "Ana Souza"


@pytest.mark.asyncio
async def test_entry_removed_after_flush():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("oi"), recorder)
    await asyncio.sleep(DELAY * 3)

    assert aggregator.pending_keys() == []
    assert aggregator.stats() == {"active_buffers": 0, "total_pending_messages": 0}

    await aggregator.submit(_event("de novo"), recorder)
    assert aggregator.stats()["total_pending_messages"] == 1


@pytest.mark.asyncio
async def test_message_during_callback_starts_fresh_entry():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    release = asyncio.Event()
    seen: list[str] = []

    async def slow_flush(event: dict) -> None:
        seen.append(extract_text(event))
        await release.wait()

    await aggregator.submit(_event("primeira"), slow_flush)
    await asyncio.sleep(DELAY * 2)
    assert seen == ["primeira"]

    await aggregator.submit(_event("segunda"), slow_flush)
    assert aggregator.stats()["total_pending_messages"] == 1

    release.set()
    await asyncio.sleep(DELAY * 3)
    assert seen == ["primeira", "segunda"]


@pytest.mark.asyncio
async def test_flushing_entry_is_detached_and_survives_clear_all():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    release = asyncio.Event()
    finished: list[str] = []

    async def slow_flush(event: dict) -> None:
        await release.wait()
        finished.append(extract_text(event))

    await aggregator.submit(_event("primeira"), slow_flush)
    await asyncio.sleep(DELAY * 2)

    assert aggregator.pending_keys() == []
    aggregator.clear_all()
    release.set()
    await aggregator.drain()

    assert finished == ["primeira"]


@pytest.mark.asyncio
async def test_callback_errors_are_swallowed():
    aggregator = MessageAggregator(delay_seconds=DELAY)

    async def failing(event: dict) -> None:
        raise RuntimeError("boom")

    assert await aggregator.submit(_image_event(), failing) is False
    assert await aggregator.submit(_event("oi"), failing) is True
    await asyncio.sleep(DELAY * 3)

    assert aggregator.pending_keys() == []


@pytest.mark.asyncio
async def test_clear_all_drops_without_flushing():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("oi"), recorder)
    await aggregator.submit(_event("tchau", phone="5511988887777@s.whatsapp.net"), recorder)
    aggregator.clear_all()
    await asyncio.sleep(DELAY * 3)

    assert recorder.events == []
    assert aggregator.pending_keys() == []


@pytest.mark.asyncio
async def test_drain_waits_for_pending_flush():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("oi"), recorder)
    await aggregator.drain()

    assert recorder.texts == ["oi"]


@pytest.mark.asyncio
async def test_greeting_then_search_merges_into_search_turn():
    aggregator = MessageAggregator(delay_seconds=DELAY)
    recorder = Recorder()

    await aggregator.submit(_event("oi"), recorder)
    await asyncio.sleep(DELAY / 3)
    await aggregator.submit(_event("quero um apartamento em Curitiba"), recorder)
    await asyncio.sleep(DELAY / 5)
    await aggregator.submit(_event("pra alugar"), recorder)
    await asyncio.sleep(DELAY * 3)

    assert recorder.texts == ["oi\nquero um apartamento em Curitiba\npra alugar"]

    intent = IntentClassifier().classify(recorder.texts[0], history=[])
    assert intent.is_property_search is True
    assert intent.property_type == "apartamento"
    assert intent.city == "Curitiba"
    assert intent.transaction_type == "aluguel"
