# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion pipelines — end-to-end generation abstractions.

Provides the pipeline classes that orchestrate a text encoder, noise
predictor, VAE and one noise scheduler per image into a generation run.

- **DiffusionPipeline** — base class with shared logic (resource
  management, noise init, progress bar).
- **StableDiffusionPipeline** — SD-style latent-diffusion pipeline with
  classifier-free guidance, image-to-image and optional ControlNet.
- **Progress** — per-step snapshot handed to the progress handler.
"""
from __future__ import annotations

import logging
import numpy as np
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence

from tqdm.auto import tqdm

from sdcore.diffusion.configuration import Configuration, GenerationMode
from sdcore.diffusion.errors import StartingImageProvidedWithoutEncoder
from sdcore.diffusion.models import (
    ControlNet,
    Decoder,
    Encoder,
    ResourceManaging,
    SafetyChecker,
    TextEncoder,
    Unet,
)
from sdcore.diffusion.rng import RandomSource, make_random_source
from sdcore.diffusion.schedulers import Scheduler, make_scheduler
from sdcore.diffusion.utils import perform_guidance, to_hidden_states

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════
#  Progress
# ═════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class Progress:
    """Sampling progress details after one completed step."""

    pipeline: "StableDiffusionPipeline"
    prompt: str
    step: int
    step_count: int
    current_latent_samples: List[np.ndarray]
    configuration: Configuration

    @property
    def is_safety_enabled(self) -> bool:
        return self.pipeline.can_safety_check and not self.configuration.disable_safety

    @property
    def current_images(self) -> List[Optional[Any]]:
        """Decode the current latents (expensive: runs the decoder)."""
        return self.pipeline.decode_to_images(self.current_latent_samples,
                                              self.configuration)


ProgressHandler = Callable[[Progress], bool]


# ═════════════════════════════════════════════════════════════════════
#  DiffusionPipeline — base class
# ═════════════════════════════════════════════════════════════════════

class DiffusionPipeline:
    """Base class for diffusion generation pipelines.

    Subclasses list their model attributes in ``_component_names``; any of
    them implementing :class:`ResourceManaging` takes part in
    ``load_resources`` / ``unload_resources`` / ``prewarm_resources``.

    Provides:
    - ``prepare_latents`` — draw the initial noise latents.
    - ``progress_bar`` — wrap the denoising loop with tqdm.
    """

    _component_names: Sequence[str] = ()
    reduce_memory: bool = False
    disable_progress_bar: bool = False

    def _managed_components(self) -> List[ResourceManaging]:
        components = (getattr(self, name, None) for name in self._component_names)
        return [c for c in components if isinstance(c, ResourceManaging)]

    def load_resources(self) -> None:
        """Load every model.

        In reduce-memory mode the models are only prewarmed and get loaded
        lazily when first used.
        """
        if self.reduce_memory:
            self.prewarm_resources()
            return
        for component in self._managed_components():
            component.load_resources()

    def unload_resources(self) -> None:
        for component in self._managed_components():
            component.unload_resources()

    def prewarm_resources(self) -> None:
        # one at a time, to keep peak memory low
        for component in self._managed_components():
            component.prewarm_resources()

    def _release(self, *components: Any) -> None:
        """Unload ``components`` when running in reduce-memory mode."""
        if not self.reduce_memory:
            return
        for component in components:
            if isinstance(component, ResourceManaging):
                component.unload_resources()

    def prepare_latents(
        self,
        sample_shape: Sequence[int],
        count: int,
        random: RandomSource,
        init_noise_sigma: float = 1.0,
    ) -> List[np.ndarray]:
        """Create ``count`` initial noise latents, drawn in order from ``random``."""
        return [random.normal_array(sample_shape, mean=0.0, stdev=init_noise_sigma)
                for _ in range(count)]

    def progress_bar(self, iterable: Iterable, desc: str = ''):
        """Wrap an iterable with a progress bar."""
        return tqdm(iterable, desc=desc, disable=self.disable_progress_bar)


# ═════════════════════════════════════════════════════════════════════
#  StableDiffusionPipeline
# ═════════════════════════════════════════════════════════════════════

class StableDiffusionPipeline(DiffusionPipeline):
    """Stable Diffusion latent-diffusion pipeline.

    1. Encode prompt and negative prompt → hidden states.
    2. Initialise one latent per image (optionally from a starting image).
    3. Iterative denoising with classifier-free guidance, one scheduler
       per image.
    4. Decode latents and run the optional safety checker.

    Args:
        text_encoder:  Model encoding prompt text.
        unet:          Noise predictor.
        decoder:       Latent → image decoder.
        encoder:       Image → latent encoder, required for image-to-image.
        control_net:   Optional ControlNet run before every UNet call.
        safety_checker: Optional safety checker for generated images.
        reduce_memory: Unload each model as soon as it is no longer needed.
        disable_progress_bar: Silence the tqdm progress bar.
    """

    _component_names = ('text_encoder', 'unet', 'decoder', 'encoder',
                        'control_net', 'safety_checker')

    def __init__(
        self,
        text_encoder: TextEncoder,
        unet: Unet,
        decoder: Decoder,
        encoder: Optional[Encoder] = None,
        control_net: Optional[ControlNet] = None,
        safety_checker: Optional[SafetyChecker] = None,
        reduce_memory: bool = False,
        disable_progress_bar: bool = False,
    ):
        self.text_encoder = text_encoder
        self.unet = unet
        self.decoder = decoder
        self.encoder = encoder
        self.control_net = control_net
        self.safety_checker = safety_checker
        self.reduce_memory = reduce_memory
        self.disable_progress_bar = disable_progress_bar

    @property
    def can_safety_check(self) -> bool:
        """Whether this pipeline can perform safety checks."""
        return self.safety_checker is not None

    def generate_images(
        self,
        configuration: Configuration,
        progress_handler: Optional[ProgressHandler] = None,
    ) -> List[Optional[Any]]:
        """Run the Stable Diffusion generation loop.

        ``progress_handler`` is called after every step; returning False
        stops the run, in which case no image is decoded and an empty list
        is returned.

        Returns:
            ``image_count`` images; an image is None when the safety checker
            rejected it.

        Raises:
            StartingImageProvidedWithoutEncoder: image-to-image was
                requested without an encoder (raised before any model call).
        """
        config = configuration
        if (config.mode is GenerationMode.IMAGE_TO_IMAGE
                and config.starting_image is not None and self.encoder is None):
            raise StartingImageProvidedWithoutEncoder()

        logger.info("Generating %d image(s): %d steps, %s scheduler, %s RNG, "
                    "seed %d", config.image_count, config.step_count,
                    config.scheduler_type.value, config.rng_type.value,
                    config.seed)

        # Encode the input prompt and negative prompt
        prompt_embedding = np.asarray(self.text_encoder.encode(config.prompt),
                                      dtype=np.float32)
        negative_prompt_embedding = np.asarray(
            self.text_encoder.encode(config.negative_prompt), dtype=np.float32)
        self._release(self.text_encoder)

        # Unconditional branch first
        concat_embedding = np.concatenate(
            [negative_prompt_embedding, prompt_embedding], axis=0)
        hidden_states = to_hidden_states(concat_embedding)

        schedulers: List[Scheduler] = [
            make_scheduler(config.scheduler_type, config.step_count)
            for _ in range(config.image_count)
        ]

        latents = self.generate_latent_samples(config, schedulers[0])

        control_net_conds = [
            np.concatenate([c, c], axis=0)
            for c in (np.asarray(cond, dtype=np.float32)
                      for cond in config.control_net_inputs)
        ]

        timesteps = schedulers[0].calculate_timesteps(config.timestep_strength)
        logger.debug("Visiting %d time steps: %s", len(timesteps), timesteps)

        # Denoising loop
        for step, t in enumerate(self.progress_bar(timesteps, desc='Denoising')):
            # Expand the latents for classifier-free guidance
            latent_unet_input = [np.concatenate([latent, latent], axis=0)
                                 for latent in latents]

            additional_residuals = None
            if self.control_net is not None:
                additional_residuals = self.control_net.execute(
                    latent_unet_input, t, hidden_states, control_net_conds)

            noise = self.unet.predict_noise(
                latent_unet_input, t, hidden_states, additional_residuals)
            noise = perform_guidance(list(noise), config.guidance_scale)

            latents = [
                schedulers[i].step(noise[i], t, latents[i])
                for i in range(config.image_count)
            ]
            logger.debug("Step %d/%d done (t=%d)", step + 1, len(timesteps), t)

            if progress_handler is not None:
                progress = Progress(
                    pipeline=self,
                    prompt=config.prompt,
                    step=step,
                    step_count=len(timesteps),
                    current_latent_samples=latents,
                    configuration=config,
                )
                if not progress_handler(progress):
                    logger.info("Generation stopped by progress handler "
                                   "after step %d/%d", step + 1, len(timesteps))
                    return []

        self._release(self.control_net, self.unet)

        images = self.decode_to_images(latents, config)
        logger.info("Generated %d image(s)", len(images))
        return images

    def generate_latent_samples(self, configuration: Configuration,
                                scheduler: Scheduler) -> List[np.ndarray]:
        """Draw the starting latents from the configured seed.

        Noise is scaled by ``scheduler.init_noise_sigma``.  For
        image-to-image the starting image is encoded with the same random
        source and forward-diffused to the strength's first time step.
        """
        config = configuration
        sample_shape = list(self.unet.latent_sample_shape)
        sample_shape[0] = 1

        random = make_random_source(config.rng_type, config.seed)
        samples = self.prepare_latents(sample_shape, config.image_count,
                                       random, scheduler.init_noise_sigma)

        if config.starting_image is not None and config.mode is GenerationMode.IMAGE_TO_IMAGE:
            if self.encoder is None:
                raise StartingImageProvidedWithoutEncoder()
            latent = self.encoder.encode(config.starting_image,
                                         config.encoder_scale_factor, random)
            return scheduler.add_noise(latent, samples, config.strength)
        return samples

    def decode_to_images(self, latents: List[np.ndarray],
                         configuration: Configuration) -> List[Optional[Any]]:
        """Decode latents, replacing images that fail the safety check by None."""
        images = list(self.decoder.decode(latents, configuration.decoder_scale_factor))
        self._release(self.decoder)

        if configuration.disable_safety or self.safety_checker is None:
            return images

        safe_images: List[Optional[Any]] = []
        for i, image in enumerate(images):
            if self.safety_checker.is_safe(image):
                safe_images.append(image)
            else:
                logger.warning("Image %d failed the safety check", i)
                safe_images.append(None)

        self._release(self.safety_checker)
        return safe_images


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'Progress',
    'DiffusionPipeline',
    'StableDiffusionPipeline',
]
