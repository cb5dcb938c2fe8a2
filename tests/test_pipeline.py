"""Tests for the Stable Diffusion generation loop, using stub models."""
import logging
import math

import numpy as np
import pytest

from sdcore.diffusion import (
    Configuration,
    DPMSolverMultistepScheduler,
    NumPyRandomSource,
    PNDMScheduler,
    Progress,
    StableDiffusionPipeline,
    StartingImageProvidedWithoutEncoder,
    TorchRandomSource,
    perform_guidance,
)

SEQ, CHANNELS = 6, 8
LATENT_SHAPE = (2, 4, 8, 8)
SAMPLE_SHAPE = (1, 4, 8, 8)


# ── Stub models ──────────────────────────────────────────────────────

class StubTextEncoder:
    def __init__(self):
        self.calls = []

    def encode(self, text):
        self.calls.append(text)
        value = 1.0 if text else 0.0
        return np.full((1, SEQ, CHANNELS), value, np.float32)


class RecordingUnet:
    latent_sample_shape = LATENT_SHAPE

    def __init__(self, noise_fn=None):
        self.calls = []
        self.noise_fn = noise_fn

    def predict_noise(self, latents, timestep, hidden_states,
                      additional_residuals=None):
        self.calls.append({
            'latents': [l.copy() for l in latents],
            'timestep': timestep,
            'hidden_states': hidden_states,
            'additional_residuals': additional_residuals,
        })
        if self.noise_fn is None:
            return [np.zeros_like(l) for l in latents]
        return [self.noise_fn(l) for l in latents]


class RecordingDecoder:
    def __init__(self):
        self.calls = []

    def decode(self, latents, scale_factor):
        self.calls.append(scale_factor)
        return [np.array(l, copy=True) for l in latents]


class StubEncoder:
    def __init__(self):
        self.calls = []

    def encode(self, image, scale_factor, random):
        self.calls.append((scale_factor, random))
        return np.full(SAMPLE_SHAPE, 0.5, np.float32)


class RecordingControlNet:
    def __init__(self):
        self.calls = []

    def execute(self, latents, timestep, hidden_states, images):
        self.calls.append({'timestep': timestep, 'images': images})
        return ['residual', timestep]


class StubSafetyChecker:
    def __init__(self, verdicts):
        self.verdicts = list(verdicts)
        self.calls = 0

    def is_safe(self, image):
        self.calls += 1
        return self.verdicts.pop(0)


class Managed:
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.loaded = self.unloaded = self.prewarmed = 0

    def load_resources(self):
        self.loaded += 1

    def unload_resources(self):
        self.unloaded += 1

    def prewarm_resources(self):
        self.prewarmed += 1


class ManagedTextEncoder(Managed, StubTextEncoder):
    pass


class ManagedUnet(Managed, RecordingUnet):
    pass


class ManagedDecoder(Managed, RecordingDecoder):
    pass


class ManagedSafetyChecker(Managed, StubSafetyChecker):
    pass


def make_pipeline(**kwargs):
    parts = {
        'text_encoder': StubTextEncoder(),
        'unet': RecordingUnet(),
        'decoder': RecordingDecoder(),
    }
    parts.update(kwargs)
    return StableDiffusionPipeline(disable_progress_bar=True, **parts)


# ── Text-to-image ────────────────────────────────────────────────────

def test_zero_noise_pndm_two_steps():
    pipeline = make_pipeline()
    snapshots = []

    def handler(progress):
        snapshots.append(progress.current_latent_samples[0].copy())
        return True

    config = Configuration(prompt="a cat", step_count=2, seed=42)
    images = pipeline.generate_images(config, handler)

    acp = PNDMScheduler(step_count=2).alphas_cumprod
    initial = NumPyRandomSource(42).normal_array(SAMPLE_SHAPE)
    after_first = initial * math.sqrt(float(acp[1]) / float(acp[501]))
    after_second = after_first * math.sqrt(float(acp[0]) / float(acp[1]))

    assert [c['timestep'] for c in pipeline.unet.calls] == [501, 1]
    first_input = pipeline.unet.calls[0]['latents']
    assert len(first_input) == 1
    assert first_input[0].shape == LATENT_SHAPE
    np.testing.assert_array_equal(first_input[0][0:1], initial)
    np.testing.assert_array_equal(first_input[0][1:2], initial)

    assert len(snapshots) == 2
    np.testing.assert_allclose(snapshots[0], after_first, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(snapshots[1], after_second, rtol=1e-5, atol=1e-6)

    assert len(images) == 1
    np.testing.assert_allclose(images[0], after_second, rtol=1e-5, atol=1e-6)
    assert pipeline.decoder.calls == [config.decoder_scale_factor]


def test_prompt_encoding_and_hidden_states():
    pipeline = make_pipeline()
    config = Configuration(prompt="a cat", negative_prompt="", step_count=1)
    pipeline.generate_images(config)

    assert pipeline.text_encoder.calls == ["a cat", ""]
    hidden = pipeline.unet.calls[0]['hidden_states']
    assert hidden.shape == (2, CHANNELS, 1, SEQ)
    np.testing.assert_array_equal(hidden[0], 0.0)
    np.testing.assert_array_equal(hidden[1], 1.0)


def test_guidance_is_applied_before_step():
    def noise_fn(latent):
        return np.stack([np.zeros(latent.shape[1:], np.float32),
                         np.full(latent.shape[1:], 0.1, np.float32)])

    pipeline = make_pipeline(unet=RecordingUnet(noise_fn))
    config = Configuration(prompt="a cat", step_count=1, seed=5,
                           guidance_scale=7.5)
    images = pipeline.generate_images(config)

    initial = NumPyRandomSource(5).normal_array(SAMPLE_SHAPE)
    noise = noise_fn(np.zeros(LATENT_SHAPE, np.float32))
    scheduler = PNDMScheduler(step_count=1)
    assert scheduler.timesteps == [1]
    expected = scheduler.step(perform_guidance(noise, 7.5), 1, initial)
    np.testing.assert_allclose(images[0], expected, rtol=1e-5, atol=1e-6)


def test_multiple_images_share_one_predictor_call_per_step():
    pipeline = make_pipeline()
    config = Configuration(prompt="a cat", step_count=3, image_count=3, seed=9)
    images = pipeline.generate_images(config)

    assert len(images) == 3
    assert len(pipeline.unet.calls) == 3
    source = NumPyRandomSource(9)
    for latent in pipeline.unet.calls[0]['latents']:
        assert latent.shape == LATENT_SHAPE
        np.testing.assert_array_equal(latent[0:1],
                                      source.normal_array(SAMPLE_SHAPE))


def test_dpm_latents_scaled_by_init_noise_sigma():
    pipeline = make_pipeline()
    config = Configuration(prompt="a cat", step_count=20, seed=4,
                           scheduler_type='dpmpp')
    scheduler = DPMSolverMultistepScheduler(step_count=20)
    latents = pipeline.generate_latent_samples(config, scheduler)

    expected = NumPyRandomSource(4).normal_array(
        SAMPLE_SHAPE, stdev=scheduler.init_noise_sigma)
    np.testing.assert_array_equal(latents[0], expected)


def test_torch_rng_latents():
    pipeline = make_pipeline()
    config = Configuration(prompt="a cat", step_count=2, seed=4,
                           rng_type='torch')
    latents = pipeline.generate_latent_samples(config, PNDMScheduler(step_count=2))
    np.testing.assert_array_equal(
        latents[0], TorchRandomSource(4).normal_array(SAMPLE_SHAPE))


def test_dpm_run_produces_finite_images():
    pipeline = make_pipeline(unet=RecordingUnet(lambda l: 0.1 * l))
    config = Configuration(prompt="a cat", step_count=5, image_count=2,
                           scheduler_type='dpmpp')
    images = pipeline.generate_images(config)
    assert len(images) == 2
    assert all(np.all(np.isfinite(image)) for image in images)
    assert [c['timestep'] for c in pipeline.unet.calls] == \
        DPMSolverMultistepScheduler(step_count=5).timesteps


# ── Progress and early stop ──────────────────────────────────────────

def test_progress_reports_each_step():
    pipeline = make_pipeline(safety_checker=StubSafetyChecker([True]))
    reports = []

    def handler(progress):
        reports.append(progress)
        return True

    config = Configuration(prompt="a cat", step_count=4)
    pipeline.generate_images(config, handler)

    assert [p.step for p in reports] == [0, 1, 2, 3]
    assert all(isinstance(p, Progress) for p in reports)
    assert all(p.step_count == 4 for p in reports)
    assert all(p.prompt == "a cat" for p in reports)
    assert all(p.pipeline is pipeline for p in reports)
    assert all(p.configuration is config for p in reports)
    assert reports[0].is_safety_enabled


def test_progress_current_images_decodes():
    pipeline = make_pipeline()
    decoded = []

    def handler(progress):
        decoded.append(progress.current_images)
        return True

    pipeline.generate_images(Configuration(prompt="a cat", step_count=2), handler)
    assert len(decoded) == 2
    # one decode per progress request, plus the final one
    assert len(pipeline.decoder.calls) == 3


def test_early_stop_returns_nothing():
    pipeline = make_pipeline()
    result = pipeline.generate_images(
        Configuration(prompt="a cat", step_count=10), lambda progress: False)

    assert result == []
    assert len(pipeline.unet.calls) == 1
    assert pipeline.decoder.calls == []


def test_early_stop_is_logged_as_normal_exit(caplog):
    pipeline = make_pipeline()
    with caplog.at_level(logging.INFO, logger='sdcore'):
        pipeline.generate_images(Configuration(prompt="a cat", step_count=3),
                                 lambda progress: False)

    stops = [r for r in caplog.records if 'stopped by progress handler' in r.getMessage()]
    assert len(stops) == 1
    assert stops[0].levelno == logging.INFO
    assert not [r for r in caplog.records if r.levelno >= logging.WARNING]


# ── Image-to-image ───────────────────────────────────────────────────

def test_starting_image_without_encoder_fails_before_any_model_call():
    pipeline = make_pipeline()
    config = Configuration(prompt="a cat",
                           starting_image=np.zeros((1, 3, 64, 64), np.float32))

    with pytest.raises(StartingImageProvidedWithoutEncoder):
        pipeline.generate_images(config)

    assert pipeline.text_encoder.calls == []
    assert pipeline.unet.calls == []
    assert pipeline.decoder.calls == []


def test_image_to_image_starts_midway():
    encoder = StubEncoder()
    pipeline = make_pipeline(encoder=encoder)
    reports = []

    def handler(progress):
        reports.append(progress.step_count)
        return True

    config = Configuration(prompt="a cat", step_count=10, strength=0.5, seed=3,
                           starting_image=np.zeros((1, 3, 64, 64), np.float32))
    pipeline.generate_images(config, handler)

    scheduler = PNDMScheduler(step_count=10)
    assert [c['timestep'] for c in pipeline.unet.calls] == scheduler.timesteps[5:]
    assert reports == [5] * 5

    assert len(encoder.calls) == 1
    scale_factor, random = encoder.calls[0]
    assert scale_factor == config.encoder_scale_factor
    assert isinstance(random, NumPyRandomSource)

    noise = NumPyRandomSource(3).normal_array(SAMPLE_SHAPE)
    expected = scheduler.add_noise(np.full(SAMPLE_SHAPE, 0.5, np.float32),
                                   [noise], 0.5)[0]
    np.testing.assert_allclose(pipeline.unet.calls[0]['latents'][0][0:1],
                               expected, rtol=1e-6, atol=1e-7)


def test_zero_strength_runs_no_steps():
    pipeline = make_pipeline(encoder=StubEncoder())
    config = Configuration(prompt="a cat", step_count=10, strength=0.0,
                           starting_image=np.zeros((1, 3, 64, 64), np.float32))
    images = pipeline.generate_images(config)

    assert pipeline.unet.calls == []
    np.testing.assert_array_equal(images[0], np.full(SAMPLE_SHAPE, 0.5, np.float32))


# ── ControlNet ───────────────────────────────────────────────────────

def test_control_net_residuals_reach_unet():
    control_net = RecordingControlNet()
    pipeline = make_pipeline(control_net=control_net)
    config = Configuration(prompt="a cat", step_count=3,
                           control_net_inputs=[np.ones((1, 3, 16, 16), np.float32)])
    pipeline.generate_images(config)

    assert len(control_net.calls) == 3
    images = control_net.calls[0]['images']
    assert len(images) == 1
    assert images[0].shape == (2, 3, 16, 16)
    for call in pipeline.unet.calls:
        assert call['additional_residuals'] == ['residual', call['timestep']]


def test_no_control_net_means_no_residuals():
    pipeline = make_pipeline()
    pipeline.generate_images(Configuration(prompt="a cat", step_count=2))
    assert all(c['additional_residuals'] is None for c in pipeline.unet.calls)


# ── Safety checking ──────────────────────────────────────────────────

def test_unsafe_images_are_replaced_by_none():
    checker = StubSafetyChecker([True, False])
    pipeline = make_pipeline(safety_checker=checker)
    images = pipeline.generate_images(
        Configuration(prompt="a cat", step_count=1, image_count=2))

    assert pipeline.can_safety_check
    assert images[0] is not None
    assert images[1] is None
    assert checker.calls == 2


def test_disable_safety_skips_checker():
    checker = StubSafetyChecker([False, False])
    pipeline = make_pipeline(safety_checker=checker)
    reports = []

    def handler(progress):
        reports.append(progress.is_safety_enabled)
        return True

    images = pipeline.generate_images(
        Configuration(prompt="a cat", step_count=1, image_count=2,
                      disable_safety=True), handler)

    assert all(image is not None for image in images)
    assert checker.calls == 0
    assert reports == [False]


def test_no_checker_cannot_safety_check():
    pipeline = make_pipeline()
    assert not pipeline.can_safety_check


# ── Resource management ──────────────────────────────────────────────

def _managed_pipeline(reduce_memory):
    return make_pipeline(text_encoder=ManagedTextEncoder(),
                         unet=ManagedUnet(),
                         decoder=ManagedDecoder(),
                         safety_checker=ManagedSafetyChecker([True]),
                         reduce_memory=reduce_memory)


def test_reduce_memory_unloads_models_after_use():
    pipeline = _managed_pipeline(reduce_memory=True)
    pipeline.generate_images(Configuration(prompt="a cat", step_count=2))

    assert pipeline.text_encoder.unloaded == 1
    assert pipeline.unet.unloaded == 1
    assert pipeline.decoder.unloaded == 1
    assert pipeline.safety_checker.unloaded == 1


def test_models_stay_loaded_without_reduce_memory():
    pipeline = _managed_pipeline(reduce_memory=False)
    pipeline.generate_images(Configuration(prompt="a cat", step_count=2))

    assert pipeline.text_encoder.unloaded == 0
    assert pipeline.unet.unloaded == 0
    assert pipeline.decoder.unloaded == 0


def test_load_resources():
    pipeline = _managed_pipeline(reduce_memory=False)
    pipeline.load_resources()
    for model in (pipeline.text_encoder, pipeline.unet, pipeline.decoder,
                  pipeline.safety_checker):
        assert model.loaded == 1
        assert model.prewarmed == 0

    pipeline.unload_resources()
    assert pipeline.unet.unloaded == 1


def test_load_resources_prewarms_when_reducing_memory():
    pipeline = _managed_pipeline(reduce_memory=True)
    pipeline.load_resources()
    for model in (pipeline.text_encoder, pipeline.unet, pipeline.decoder,
                  pipeline.safety_checker):
        assert model.loaded == 0
        assert model.prewarmed == 1


def test_unmanaged_models_are_ignored():
    pipeline = make_pipeline(reduce_memory=True)
    pipeline.load_resources()
    pipeline.unload_resources()
    images = pipeline.generate_images(Configuration(prompt="a cat", step_count=1))
    assert len(images) == 1
