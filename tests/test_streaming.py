"""Tests for streaming reconciliation and the streaming loop."""

import random
import threading
import time

import numpy as np
import pytest

from livescribe.config import StreamingConfig
from livescribe.exceptions import ModelNotReadyError
from livescribe.transcription.streaming import (
    StreamingReconciler,
    StreamingTranscriber,
    StreamingUpdate,
    common_prefix_length,
    is_hallucination,
    normalize,
    split_confirmed_hypothesis,
    split_offset,
)

from conftest import FakeEngine


class TestNormalize:

    def test_strips_punctuation_and_whitespace(self):
        assert normalize("Hello, world!") == "Helloworld"
        assert normalize("今日は、いい天気。") == "今日はいい天気"
        assert normalize("  「はい」 ") == "はい"

    def test_common_prefix_length(self):
        assert common_prefix_length("abcd", "abxd") == 2
        assert common_prefix_length("", "abc") == 0
        assert common_prefix_length("abc", "abc") == 3

    def test_split_offset_extends_over_separators(self):
        assert split_offset("今日は、いい天気", 3) == 4
        assert split_offset("Hello, world", 5) == 7
        assert split_offset("abc", 10) == 3
        assert split_offset("abc", 0) == 0


class TestHallucinationFilter:

    @pytest.mark.parametrize("text", [
        "ご視聴ありがとうございました",
        "ご視聴ありがとうございました。",
        "ありがとうございました！",
        " Thank you for watching. ",
        "Thanks for watching!",
    ])
    def test_catalog_phrases(self, text):
        assert is_hallucination(text)

    @pytest.mark.parametrize("text", [
        "本日はご視聴ありがとうございました",
        "Thank you for watching the demo",
        "こんにちは",
        "",
    ])
    def test_exact_match_only(self, text):
        assert not is_hallucination(text)


class TestSplitConfirmedHypothesis:
    """Tests for the confirmed/hypothesis split."""

    def test_added_punctuation_is_confirmed(self):
        confirmed, hypothesis, length = split_confirmed_hypothesis("こんにちは", "こんにちは、", 0)

        assert confirmed == "こんにちは、"
        assert hypothesis == ""
        assert length == 5

    def test_new_words_become_hypothesis(self):
        confirmed, hypothesis, length = split_confirmed_hypothesis("今日は", "今日はいい天気", 0)

        assert confirmed == "今日は"
        assert hypothesis == "いい天気"
        assert length == 3

    def test_previous_confirmed_length_is_kept(self):
        confirmed, hypothesis, length = split_confirmed_hypothesis(
            "Hello world", "Hello there world again", 10
        )

        assert length == 10
        assert normalize(confirmed) == "Hellothere"
        assert hypothesis == "world again"

    def test_clamped_to_current_text(self):
        confirmed, hypothesis, length = split_confirmed_hypothesis("今日は", "今日", 3)

        assert length == 2
        assert confirmed == "今日"
        assert hypothesis == ""


class TestStreamingReconciler:
    """Tests for StreamingReconciler."""

    def test_first_pass_is_all_hypothesis(self):
        reconciler = StreamingReconciler()
        assert reconciler.apply("今日は") == StreamingUpdate(confirmed="", hypothesis="今日は")

    def test_growing_text(self):
        reconciler = StreamingReconciler()
        reconciler.apply("今日は")

        assert reconciler.apply("今日はいい天気") == StreamingUpdate("今日は", "いい天気")
        assert reconciler.apply("今日はいい天気ですね。") == StreamingUpdate("今日はいい天気", "ですね。")
        assert reconciler.state.confirmed_normalized_length == 7

    def test_identical_pass_confirms_everything(self):
        reconciler = StreamingReconciler()
        text = "Hello, how are you today?"
        reconciler.apply(text)

        assert reconciler.apply(text) == StreamingUpdate(confirmed=text, hypothesis="")

    def test_regression_does_not_shrink_confirmed(self):
        reconciler = StreamingReconciler()
        reconciler.apply("今日は")
        reconciler.apply("今日は")
        assert reconciler.state.confirmed_normalized_length == 3

        update = reconciler.apply("今日")

        assert update.confirmed == "今日は"
        assert update.hypothesis == ""
        assert reconciler.state.confirmed_normalized_length == 3
        assert reconciler.state.confirmed_text == "今日は"

    def test_hallucination_leaves_state_unchanged(self):
        reconciler = StreamingReconciler()
        reconciler.apply("こんにちは")
        reconciler.apply("こんにちは世界")
        before = (
            reconciler.state.previous_raw_text,
            reconciler.state.confirmed_normalized_length,
            reconciler.state.confirmed_text,
        )

        assert reconciler.apply("ご視聴ありがとうございました。") is None

        after = (
            reconciler.state.previous_raw_text,
            reconciler.state.confirmed_normalized_length,
            reconciler.state.confirmed_text,
        )
        assert after == before

    def test_empty_pass_is_discarded(self):
        reconciler = StreamingReconciler()
        reconciler.apply("abc")
        assert reconciler.apply("   ") is None
        assert reconciler.state.previous_raw_text == "abc"

    def test_confirmed_length_never_decreases(self):
        rng = random.Random(7)
        words = ["今日は", "いい", "天気", "です", "ね", "、", "。", " "]
        reconciler = StreamingReconciler()
        lengths = []
        text = ""
        for _ in range(200):
            if rng.random() < 0.7:
                text += rng.choice(words)
            else:
                text = text[:rng.randint(0, len(text))]
            reconciler.apply(text)
            lengths.append(reconciler.state.confirmed_normalized_length)

        assert lengths == sorted(lengths)

    def test_reset(self):
        reconciler = StreamingReconciler()
        reconciler.apply("abc")
        reconciler.apply("abc")
        reconciler.mark_transcribed(30000)

        reconciler.reset()

        assert reconciler.state.confirmed_normalized_length == 0
        assert reconciler.state.previous_raw_text == ""
        assert reconciler.state.last_sample_count == 0


class TestGating:
    """Tests for when streaming passes are allowed to run."""

    def test_first_pass_needs_one_and_a_half_seconds(self):
        reconciler = StreamingReconciler()
        assert not reconciler.should_transcribe(0)
        assert not reconciler.should_transcribe(23999)
        assert reconciler.should_transcribe(24000)

    def test_later_passes_need_new_audio(self):
        reconciler = StreamingReconciler()
        reconciler.mark_transcribed(24000)

        assert not reconciler.should_transcribe(24000)
        assert not reconciler.should_transcribe(28000)
        assert reconciler.should_transcribe(32001)

    def test_from_config(self):
        reconciler = StreamingReconciler.from_config(
            StreamingConfig(min_initial_samples=100, min_new_samples=10)
        )
        assert reconciler.should_transcribe(100)


class GrowingSource:
    """Sample provider that grows by one block per snapshot."""

    def __init__(self, block=8000, start=0):
        self.block = block
        self.count = start
        self.lock = threading.Lock()

    def __call__(self):
        with self.lock:
            self.count += self.block
            return np.zeros(self.count, dtype=np.float32)


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


FAST = StreamingConfig(interval_s=0.01, min_initial_samples=24000, min_new_samples=8000)


class TestStreamingTranscriber:
    """Tests for the background streaming loop."""

    def test_emits_reconciled_updates(self):
        engine = FakeEngine(texts=["今日は", "今日はいい", "今日はいい天気"])
        updates = []
        streamer = StreamingTranscriber(
            engine, GrowingSource(block=16000), on_update=lambda c, h: updates.append((c, h)),
            language="ja", config=FAST,
        )

        streamer.start()
        assert _wait_for(lambda: len(updates) >= 3)
        streamer.stop()

        assert updates[:3] == [("", "今日は"), ("今日は", "いい"), ("今日はいい", "天気")]
        assert not streamer.is_running

    def test_passes_wait_for_enough_audio(self):
        engine = FakeEngine(texts=["a"] * 100)
        source = GrowingSource(block=4000)
        streamer = StreamingTranscriber(engine, source, on_update=lambda c, h: None, config=FAST)

        streamer.start()
        assert _wait_for(lambda: len(engine.calls) >= 2)
        streamer.stop()

        assert engine.calls[0] >= 24000
        assert all(b - a > 8000 for a, b in zip(engine.calls, engine.calls[1:]))

    def test_stop_drops_in_flight_result(self):
        started = threading.Event()
        release = threading.Event()
        updates = []

        class SlowEngine(FakeEngine):
            def transcribe_full(self, samples, language=None):
                started.set()
                release.wait(2.0)
                return super().transcribe_full(samples, language)

        engine = SlowEngine(texts=["late text"])
        streamer = StreamingTranscriber(
            engine, GrowingSource(block=30000), on_update=lambda c, h: updates.append(c), config=FAST
        )
        streamer.start()
        assert started.wait(2.0)

        stopper = threading.Thread(target=streamer.stop)
        stopper.start()
        time.sleep(0.05)
        release.set()
        stopper.join(2.0)

        assert not stopper.is_alive()
        assert updates == []
        assert engine.calls == [30000]

    def test_model_not_ready_ends_loop(self):
        class UnloadedEngine(FakeEngine):
            def transcribe_full(self, samples, language=None):
                raise ModelNotReadyError("not loaded")

        streamer = StreamingTranscriber(
            UnloadedEngine(), GrowingSource(block=30000), on_update=lambda c, h: None, config=FAST
        )
        streamer.start()

        assert _wait_for(lambda: not streamer.is_running)
        streamer.stop()

    def test_failing_callback_keeps_loop_running(self):
        engine = FakeEngine(texts=["a", "ab", "abc"])

        def on_update(confirmed, hypothesis):
            raise RuntimeError("view gone")

        streamer = StreamingTranscriber(engine, GrowingSource(block=16000), on_update=on_update, config=FAST)
        streamer.start()
        assert _wait_for(lambda: len(engine.calls) >= 3)
        streamer.stop()

    def test_restart_resets_reconciler(self):
        engine = FakeEngine(texts=["abc", "abc"])
        streamer = StreamingTranscriber(engine, GrowingSource(block=30000), on_update=lambda c, h: None, config=FAST)
        streamer.start()
        assert _wait_for(lambda: streamer.reconciler.state.confirmed_normalized_length == 3)
        streamer.stop()

        streamer.start()
        streamer.stop()

        assert streamer.reconciler.state.confirmed_normalized_length == 0
