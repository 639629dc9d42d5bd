import asyncio
from unittest.mock import patch

import numpy as np
import pytest

from soramimi.app.errors import CaptureAcquisitionError, PlaybackConstructionError
from soramimi.app.services.audio.output_mixer import OutputMixer


@pytest.fixture
def mixer(patched_output):
    mixer = OutputMixer(sample_rate=44100, monitoring_enabled=True, monitoring_gain=1.5, block_size=16)
    yield mixer
    mixer.close()


@pytest.mark.asyncio
async def test_start_opens_stereo_stream(mixer, patched_output, output_stream):
    mixer.start()

    assert mixer.is_running()
    kwargs = patched_output.call_args.kwargs
    assert kwargs["channels"] == 2
    assert kwargs["samplerate"] == 44100
    output_stream.start.assert_called_once()


@pytest.mark.asyncio
async def test_start_failure_raises_capture_error():
    mixer = OutputMixer()
    with patch("soramimi.app.services.audio.devices.open_output_stream", side_effect=OSError("no device")):
        with pytest.raises(CaptureAcquisitionError):
            mixer.start()

    assert not mixer.is_running()


@pytest.mark.asyncio
async def test_play_requires_running_stream():
    with pytest.raises(PlaybackConstructionError):
        OutputMixer().play(np.zeros(10, dtype=np.float32))


@pytest.mark.asyncio
async def test_play_rejects_malformed_frames(mixer):
    mixer.start()

    with pytest.raises(PlaybackConstructionError):
        mixer.play(np.zeros((10, 3), dtype=np.float32))


@pytest.mark.asyncio
async def test_mono_voice_is_mixed_on_both_channels(mixer):
    mixer.monitoring_enabled = False
    mixer.start()

    future = mixer.play(np.full(8, 0.25, dtype=np.float32))
    out = mixer.mix(4)

    assert out.shape == (4, 2)
    assert np.allclose(out, 0.25)
    assert mixer.active_voice_count() == 1
    assert not future.done()


@pytest.mark.asyncio
async def test_finished_voice_resolves_true(mixer):
    mixer.start()
    future = mixer.play(np.full((6, 2), 0.1, dtype=np.float32))

    mixer.mix(4)
    out = mixer.mix(4)

    assert np.allclose(out[:2], 0.1)
    assert np.allclose(out[2:], 0.0)
    assert await asyncio.wait_for(future, timeout=1.0) is True
    assert mixer.active_voice_count() == 0


@pytest.mark.asyncio
async def test_empty_voice_resolves_immediately(mixer):
    mixer.start()
    future = mixer.play(np.zeros(0, dtype=np.float32))

    assert future.done() and future.result() is True


@pytest.mark.asyncio
async def test_concurrent_voices_are_summed_and_clipped(mixer):
    mixer.monitoring_enabled = False
    mixer.start()

    mixer.play(np.full(4, 0.3, dtype=np.float32))
    mixer.play(np.full(4, 0.4, dtype=np.float32))
    assert np.allclose(mixer.mix(4), 0.7)

    mixer.play(np.full(4, 0.8, dtype=np.float32))
    mixer.play(np.full(4, 0.8, dtype=np.float32))
    assert np.allclose(mixer.mix(4), 1.0)


@pytest.mark.asyncio
async def test_monitoring_signal_is_amplified(mixer):
    mixer.start()
    mixer.push_monitor_block(np.full(4, 0.1, dtype=np.float32))

    out = mixer.mix(8)

    assert np.allclose(out[:4], 0.15)
    assert np.allclose(out[4:], 0.0)


@pytest.mark.asyncio
async def test_monitoring_disabled_ignores_input(mixer):
    mixer.monitoring_enabled = False
    mixer.start()
    mixer.push_monitor_block(np.full(4, 0.1, dtype=np.float32))

    assert np.allclose(mixer.mix(4), 0.0)


@pytest.mark.asyncio
async def test_monitoring_latency_is_capped(mixer):
    mixer.start()
    # block_size=16, three blocks of latency at most
    for value in (0.1, 0.2, 0.3, 0.4, 0.5):
        mixer.push_monitor_block(np.full(16, value, dtype=np.float32))

    out = mixer.mix(16)

    assert np.allclose(out, 0.3 * 1.5)


@pytest.mark.asyncio
async def test_close_resolves_pending_voices_false(mixer, output_stream):
    mixer.start()
    future = mixer.play(np.ones(100, dtype=np.float32) * 0.1)

    mixer.close()

    assert await asyncio.wait_for(future, timeout=1.0) is False
    assert not mixer.is_running()
    output_stream.stop.assert_called_once()
    output_stream.close.assert_called_once()


@pytest.mark.asyncio
async def test_stream_callback_fills_output_buffer(mixer):
    mixer.monitoring_enabled = False
    mixer.start()
    mixer.play(np.full(4, 0.2, dtype=np.float32))
    outdata = np.empty((4, 2), dtype=np.float32)

    mixer._stream_callback(outdata, 4, None, None)

    assert np.allclose(outdata, 0.2)


@pytest.mark.asyncio
async def test_node_factories_use_mixer_sample_rate(mixer):
    lowpass = mixer.create_lowpass(3000, order=2)

    assert lowpass.sample_rate == 44100
    assert mixer.create_panner(0.5).pan == 0.5
    assert mixer.create_gain(0.9).gain == 0.9
