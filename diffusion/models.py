# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Model interfaces consumed by the diffusion pipelines.

The networks themselves (text encoder, UNet, VAE encoder / decoder,
ControlNet, safety checker) run elsewhere; the pipeline only needs the
narrow call each one exposes:

- **TextEncoder** — prompt text → embedding (1, S, C).
- **Unet** — noise prediction for a batch of latents.
- **Encoder** — starting image → latent, for image-to-image.
- **Decoder** — latents → images.
- **ControlNet** — additional UNet residuals from control images.
- **SafetyChecker** — per-image safety predicate.

Any of them may also implement **ResourceManaging** to be loaded,
unloaded and prewarmed together with the pipeline.
"""
from __future__ import annotations

import numpy as np
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from sdcore.diffusion.rng import RandomSource


@runtime_checkable
class ResourceManaging(Protocol):
    """A model whose weights can be loaded and released on demand."""

    def load_resources(self) -> None:
        """Load the model so that it is ready for prediction."""
        ...

    def unload_resources(self) -> None:
        """Release the model's resources."""
        ...

    def prewarm_resources(self) -> None:
        """Load then unload, so a later load is fast."""
        ...


@runtime_checkable
class TextEncoder(Protocol):
    def encode(self, text: str) -> np.ndarray:
        """Encode ``text`` into a (1, S, C) embedding."""
        ...


@runtime_checkable
class Unet(Protocol):
    """Noise predictor.

    ``latent_sample_shape`` is the predictor's expected input shape,
    e.g. ``(2, 4, 64, 64)``; its batch axis covers the two guidance
    branches.
    """

    latent_sample_shape: Sequence[int]

    def predict_noise(
        self,
        latents: List[np.ndarray],
        timestep: int,
        hidden_states: np.ndarray,
        additional_residuals: Optional[Any] = None,
    ) -> List[np.ndarray]:
        """Predict noise for every (2, C, H, W) latent in one call."""
        ...


@runtime_checkable
class Encoder(Protocol):
    def encode(self, image: Any, scale_factor: float,
               random: RandomSource) -> np.ndarray:
        """Encode ``image`` into a scaled (1, C, H, W) latent."""
        ...


@runtime_checkable
class Decoder(Protocol):
    def decode(self, latents: List[np.ndarray],
               scale_factor: float) -> List[Any]:
        """Decode each latent into an image."""
        ...


@runtime_checkable
class ControlNet(Protocol):
    def execute(
        self,
        latents: List[np.ndarray],
        timestep: int,
        hidden_states: np.ndarray,
        images: List[np.ndarray],
    ) -> Any:
        """Compute the residuals passed to the UNet as ``additional_residuals``."""
        ...


@runtime_checkable
class SafetyChecker(Protocol):
    def is_safe(self, image: Any) -> bool:
        ...


__all__ = [
    'ResourceManaging',
    'TextEncoder',
    'Unet',
    'Encoder',
    'Decoder',
    'ControlNet',
    'SafetyChecker',
]
