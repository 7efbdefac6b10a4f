"""
Recording Controller Module

Push-to-talk microphone capture. Audio is buffered while recording and
handed to the conversation pipeline as one WAV clip when recording stops.

The PortAudio callback runs on its own thread and only appends to a
lock-guarded buffer.
"""

import threading
from typing import Any, Callable, List, Optional

from maca.config import settings
from maca.core.providers import AudioClip
from maca.errors import MicrophoneAccessError, PipelineError
from maca.logger import get_logger
from .audio_codec import pcm_to_wav
from .conversation_pipeline import ConversationPipeline, TurnResult

logger = get_logger(__name__)

StreamFactory = Callable[..., Any]


def _sounddevice_stream(**kwargs: Any) -> Any:
    # Imported on first use: loading sounddevice needs the PortAudio library
    import sounddevice as sd
    return sd.RawInputStream(**kwargs)


class RecordingController:
    """
    Captures one utterance at a time from the microphone.

    Usage:
        recorder = RecordingController(pipeline)
        recorder.start_recording()
        ...
        result = await recorder.stop_recording()
    """

    def __init__(
        self,
        pipeline: ConversationPipeline,
        sample_rate: Optional[int] = None,
        channels: Optional[int] = None,
        device: Optional[str] = None,
        stream_factory: Optional[StreamFactory] = None,
    ):
        config = settings.recording
        self._pipeline = pipeline
        self._sample_rate = sample_rate or config.sample_rate
        self._channels = channels or config.channels
        self._device = device if device is not None else config.device
        self._stream_factory = stream_factory or _sounddevice_stream

        self._stream: Optional[Any] = None
        self._frames: List[bytes] = []
        self._lock = threading.Lock()
        self._overflows = 0

    def _audio_callback(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if status:
            self._overflows += 1
        with self._lock:
            self._frames.append(bytes(indata))

    def start_recording(self) -> None:
        """
        Open the microphone and start buffering.

        No-op while already recording.

        Raises:
            MicrophoneAccessError: If no device is available or access fails
        """
        if self._stream is not None:
            logger.debug("Already recording")
            return

        with self._lock:
            self._frames = []
        self._overflows = 0

        try:
            stream = self._stream_factory(
                samplerate=self._sample_rate,
                channels=self._channels,
                dtype="int16",
                device=self._device,
                callback=self._audio_callback,
            )
        except Exception as e:
            raise MicrophoneAccessError(f"Could not open microphone: {e}") from e

        try:
            stream.start()
        except Exception as e:
            stream.close()
            raise MicrophoneAccessError(f"Could not start microphone: {e}") from e

        self._stream = stream
        logger.info(f"Recording started @ {self._sample_rate} Hz")

    async def stop_recording(self) -> Optional[TurnResult]:
        """
        Stop capture and run the pipeline on the recorded clip.

        No-op if not recording. Pipeline errors were already published as
        events; they are logged here and not re-raised.
        """
        stream = self._stream
        if stream is None:
            return None

        self._stream = None
        try:
            stream.stop()
        finally:
            stream.close()

        if self._overflows:
            logger.warning(f"Input overflowed {self._overflows} times during recording")

        clip = self._finalize()
        if clip is None:
            logger.warning("Recording was empty, nothing to process")
            return None

        try:
            return await self._pipeline.process_voice_input(clip)
        except PipelineError as e:
            logger.error(f"Voice turn failed: {e}")
            return None

    def cancel_recording(self) -> None:
        """Close the microphone and discard buffered audio."""
        stream = self._stream
        if stream is None:
            return
        self._stream = None
        try:
            stream.stop()
        finally:
            stream.close()
        with self._lock:
            self._frames = []
        logger.info("Recording cancelled")

    def _finalize(self) -> Optional[AudioClip]:
        with self._lock:
            frames = b"".join(self._frames)
            self._frames = []
        if not frames:
            return None

        duration_s = len(frames) / (self._sample_rate * self._channels * 2)
        logger.info(f"Recording stopped: {duration_s:.1f}s of audio")
        return AudioClip(
            data=pcm_to_wav(frames, self._sample_rate, self._channels),
            container_format="wav",
            sample_rate_hz=self._sample_rate,
            bit_depth=16,
            mime_type="audio/wav",
        )

    @property
    def is_recording(self) -> bool:
        return self._stream is not None
