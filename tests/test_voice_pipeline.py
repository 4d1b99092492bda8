import asyncio
import threading
import unittest

import numpy as np

from bookmark.errors import RecordingPermissionDenied
from bookmark.voice_pipeline import VoicePipeline, VoiceState


class _FakeMicrophone:
    def __init__(self, deny=False):
        self.deny = deny
        self.fail_with = None
        self.starts = 0
        self.stops = 0
        self._on_audio = None

    def start(self, on_audio):
        if self.deny:
            raise RecordingPermissionDenied("microphone access refused")
        if self.fail_with is not None:
            raise self.fail_with
        self.starts += 1
        self._on_audio = on_audio

    def stop(self):
        self.stops += 1

    def push(self, samples):
        self._on_audio(np.asarray(samples, dtype=np.float32))


class _FakeSpeaker:
    def __init__(self, block=False):
        self.played = []
        self.stopped = 0
        self._release = threading.Event()
        if not block:
            self._release.set()

    def play(self, samples, sample_rate):
        self.played.append((len(samples), sample_rate))
        self._release.wait(timeout=5)

    def stop(self):
        self.stopped += 1
        self._release.set()


class TestVoicePipeline(unittest.IsolatedAsyncioTestCase):
    def _pipeline(self, transcripts, *, speaker=None, respond=None, microphone=None):
        self.microphone = microphone or _FakeMicrophone()
        self.speaker = speaker or _FakeSpeaker()
        self.states = []
        self.heard = []
        self.replies = []
        self.errors = []
        queue = list(transcripts)

        async def transcribe(samples):
            return queue.pop(0) if queue else ""

        async def default_respond(text):
            return f"You said {text}"

        async def synthesize(text):
            return np.zeros(8, dtype=np.float32), 22050

        return VoicePipeline(
            self.microphone,
            self.speaker,
            transcribe=transcribe,
            respond=respond or default_respond,
            synthesize=synthesize,
            sample_rate=10,
            segment_seconds=1.0,
            on_state_change=lambda old, new: self.states.append(new),
            on_transcript=self.heard.append,
            on_response=self.replies.append,
            on_error=self.errors.append,
        )

    async def _reach(self, pipeline, state):
        await asyncio.wait_for(pipeline.wait_for(state), timeout=2)

    async def test_full_turn_walks_every_state(self):
        pipeline = self._pipeline(["what is the white whale"])
        pipeline.start_listening()
        self.assertIs(pipeline.state, VoiceState.CAPTURING)

        self.microphone.push(np.ones(10))
        await self._reach(pipeline, VoiceState.SPEAKING)
        await self._reach(pipeline, VoiceState.IDLE)

        self.assertEqual(
            self.states,
            [
                VoiceState.CAPTURING,
                VoiceState.TRANSCRIBING,
                VoiceState.PROCESSING,
                VoiceState.SYNTHESIZING,
                VoiceState.SPEAKING,
                VoiceState.IDLE,
            ],
        )
        self.assertEqual(self.heard, ["what is the white whale"])
        self.assertEqual(self.replies, ["You said what is the white whale"])
        self.assertEqual(self.speaker.played, [(8, 22050)])
        self.assertEqual(self.microphone.stops, 1)

    async def test_short_audio_keeps_capturing(self):
        pipeline = self._pipeline(["hello"])
        pipeline.start_listening()
        self.microphone.push(np.ones(6))
        await asyncio.sleep(0.01)
        self.assertIs(pipeline.state, VoiceState.CAPTURING)
        pipeline.stop_listening()

    async def test_empty_transcript_returns_to_capturing_and_uses_next_segment(self):
        pipeline = self._pipeline(["", "hello there"])
        pipeline.start_listening()
        self.microphone.push(np.ones(20))
        await self._reach(pipeline, VoiceState.IDLE)

        self.assertEqual(
            self.states[:5],
            [
                VoiceState.CAPTURING,
                VoiceState.TRANSCRIBING,
                VoiceState.CAPTURING,
                VoiceState.TRANSCRIBING,
                VoiceState.PROCESSING,
            ],
        )
        self.assertEqual(self.heard, ["hello there"])

    async def test_start_listening_is_ignored_mid_turn(self):
        gate = asyncio.Event()

        async def slow_respond(text):
            await gate.wait()
            return "ok"

        pipeline = self._pipeline(["question"], respond=slow_respond)
        pipeline.start_listening()
        pipeline.start_listening()
        self.assertEqual(self.microphone.starts, 1)

        self.microphone.push(np.ones(10))
        await self._reach(pipeline, VoiceState.PROCESSING)
        pipeline.start_listening()
        self.assertIs(pipeline.state, VoiceState.PROCESSING)
        self.assertEqual(self.microphone.starts, 1)

        gate.set()
        await self._reach(pipeline, VoiceState.IDLE)

    async def test_stop_listening_discards_in_flight_work(self):
        gate = asyncio.Event()

        async def slow_respond(text):
            await gate.wait()
            return "too late"

        pipeline = self._pipeline(["question"], respond=slow_respond)
        pipeline.start_listening()
        self.microphone.push(np.ones(10))
        await self._reach(pipeline, VoiceState.PROCESSING)

        pipeline.stop_listening()
        self.assertIs(pipeline.state, VoiceState.IDLE)
        gate.set()
        await asyncio.sleep(0.05)

        self.assertEqual(self.replies, [])
        self.assertIs(pipeline.state, VoiceState.IDLE)
        self.assertEqual(self.speaker.played, [])

    async def test_barge_in_stops_playback_and_captures(self):
        speaker = _FakeSpeaker(block=True)
        pipeline = self._pipeline(["read me the first line"], speaker=speaker)
        pipeline.start_listening()
        self.microphone.push(np.ones(10))
        await self._reach(pipeline, VoiceState.SPEAKING)

        pipeline.start_listening()

        self.assertIs(pipeline.state, VoiceState.CAPTURING)
        self.assertEqual(speaker.stopped, 1)
        self.assertEqual(self.microphone.starts, 2)
        await asyncio.sleep(0.05)
        self.assertIs(pipeline.state, VoiceState.CAPTURING)
        pipeline.stop_listening()

    async def test_capture_error_during_barge_in_returns_to_idle(self):
        speaker = _FakeSpeaker(block=True)
        pipeline = self._pipeline(["read me the first line"], speaker=speaker)
        pipeline.start_listening()
        self.microphone.push(np.ones(10))
        await self._reach(pipeline, VoiceState.SPEAKING)

        self.microphone.fail_with = OSError("input device unplugged")
        with self.assertRaises(OSError):
            pipeline.start_listening()

        self.assertIs(pipeline.state, VoiceState.IDLE)
        self.assertEqual(speaker.stopped, 1)
        await asyncio.sleep(0.05)
        self.assertIs(pipeline.state, VoiceState.IDLE)

    async def test_microphone_refusal_leaves_pipeline_idle(self):
        pipeline = self._pipeline([], microphone=_FakeMicrophone(deny=True))
        with self.assertRaises(RecordingPermissionDenied):
            pipeline.start_listening()
        self.assertIs(pipeline.state, VoiceState.IDLE)

    async def test_turn_failure_reports_error_and_returns_to_idle(self):
        async def broken_respond(text):
            raise RuntimeError("generation crashed")

        pipeline = self._pipeline(["question"], respond=broken_respond)
        pipeline.start_listening()
        self.microphone.push(np.ones(10))
        await self._reach(pipeline, VoiceState.IDLE)

        self.assertEqual(len(self.errors), 1)
        self.assertIsInstance(self.errors[0], RuntimeError)
        self.assertEqual(self.replies, [])


if __name__ == "__main__":
    unittest.main()
