# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Image generation configuration."""
from __future__ import annotations

import enum
import os
import tomllib
from dataclasses import dataclass, field
from typing import Any, List, Optional

from sdcore.diffusion.errors import ConfigurationError
from sdcore.diffusion.rng import RNGType
from sdcore.diffusion.schedulers import SchedulerType, scheduler_class


class GenerationMode(str, enum.Enum):
    TEXT_TO_IMAGE = 'text_to_image'
    IMAGE_TO_IMAGE = 'image_to_image'


@dataclass
class Configuration:
    """Settings for one ``generate_images`` run.

    ``mode`` is derived from ``starting_image`` when not given: a starting
    image selects image-to-image, otherwise text-to-image.
    """

    prompt: str
    negative_prompt: str = ""
    starting_image: Optional[Any] = None
    strength: float = 1.0
    image_count: int = 1
    step_count: int = 50
    seed: int = 0
    guidance_scale: float = 7.5
    control_net_inputs: List[Any] = field(default_factory=list)
    disable_safety: bool = False
    scheduler_type: SchedulerType = SchedulerType.PNDM
    rng_type: RNGType = RNGType.NUMPY
    encoder_scale_factor: float = 0.18215
    decoder_scale_factor: float = 0.18215
    mode: Optional[GenerationMode] = None

    def __post_init__(self):
        """Normalise enum fields, derive the mode and validate ranges."""
        try:
            self.scheduler_type = SchedulerType(self.scheduler_type)
            self.rng_type = RNGType(self.rng_type)
            if self.mode is not None:
                self.mode = GenerationMode(self.mode)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        if self.mode is None:
            self.mode = (GenerationMode.IMAGE_TO_IMAGE
                         if self.starting_image is not None
                         else GenerationMode.TEXT_TO_IMAGE)

        if self.step_count < 1:
            raise ConfigurationError(
                f"step_count must be >= 1, got {self.step_count}")
        max_steps = scheduler_class(self.scheduler_type).max_step_count()
        if self.step_count > max_steps:
            raise ConfigurationError(
                f"step_count must be <= {max_steps} for the "
                f"{self.scheduler_type.value} scheduler, got {self.step_count}")
        if not 0 <= self.seed < 2 ** 32:
            raise ConfigurationError(
                f"seed must fit in 32 bits, got {self.seed}")
        if self.image_count < 1:
            raise ConfigurationError(
                f"image_count must be >= 1, got {self.image_count}")
        if not 0.0 <= self.strength <= 1.0:
            raise ConfigurationError(
                f"strength must be in [0, 1], got {self.strength}")

    @property
    def timestep_strength(self) -> Optional[float]:
        """Strength used to slice the schedule, image-to-image only."""
        if self.mode is GenerationMode.IMAGE_TO_IMAGE:
            return self.strength
        return None

    @classmethod
    def load(cls, config_path: str) -> "Configuration":
        """
        Load a generation configuration from a TOML file.

        Parameters
        ----------
        config_path : str
            Filesystem path to a TOML file containing a "generation" table.
            Enum fields are given by value, e.g. ``scheduler_type = "dpmpp"``.

        Returns
        -------
        Configuration
            Instance populated from the "generation" table.

        Raises
        ------
        FileNotFoundError
            If no file exists at `config_path`.
        ConfigurationError
            If the table holds invalid values.
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found at {config_path}")

        with open(config_path, "rb") as f:
            data = tomllib.load(f)

        generation_data = data.get("generation", {})
        try:
            return cls(**generation_data)
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc


__all__ = [
    'GenerationMode',
    'Configuration',
]
