# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Diffusion utilities — guidance, hidden-state layout, and schedule builders.

Shared helpers used across schedulers and pipelines:

- ``perform_guidance``   — combine the two classifier-free guidance branches.
- ``to_hidden_states``   — lay out text embeddings for the noise predictor.
- ``get_beta_schedule``  — public API for building β schedules.
"""
from __future__ import annotations

import numpy as np
from typing import List, Union, overload


# ═════════════════════════════════════════════════════════════════════
#  Classifier-Free Guidance
# ═════════════════════════════════════════════════════════════════════

@overload
def perform_guidance(noise: np.ndarray, guidance_scale: float) -> np.ndarray: ...


@overload
def perform_guidance(noise: List[np.ndarray],
                     guidance_scale: float) -> List[np.ndarray]: ...


def perform_guidance(
    noise: Union[np.ndarray, List[np.ndarray]],
    guidance_scale: float,
) -> Union[np.ndarray, List[np.ndarray]]:
    """Combine unconditional and conditional noise predictions.

    ``noise`` carries both branches along its batch axis: index 0 is the
    unconditional (negative prompt) prediction, index 1 the text-conditioned
    one.  The result keeps a batch axis of size 1::

        guided = uncond + guidance_scale * (cond - uncond)

    A list is treated as one two-branch prediction per image and guided
    independently.

    Args:
        noise:          (2, …) noise prediction, or a list of them.
        guidance_scale: CFG weight (1.0 = conditional branch only,
                        0.0 = unconditional branch only).

    Returns:
        (1, …) guided noise prediction, or a list of them.
    """
    if isinstance(noise, (list, tuple)):
        return [perform_guidance(n, guidance_scale) for n in noise]

    noise = np.asarray(noise, dtype=np.float32)
    if noise.ndim == 0 or noise.shape[0] != 2:
        raise ValueError(
            f"Guidance expects a batch of 2 (uncond, cond), got shape "
            f"{noise.shape}")

    uncond = noise[0:1]
    cond = noise[1:2]
    # Lerp form: exact at scale 0 and 1.
    scale = np.float32(guidance_scale)
    guided = (np.float32(1.0) - scale) * uncond + scale * cond
    return guided.astype(np.float32)


# ═════════════════════════════════════════════════════════════════════
#  Hidden-state layout
# ═════════════════════════════════════════════════════════════════════

def to_hidden_states(embedding: np.ndarray) -> np.ndarray:
    """Transpose text embeddings into the predictor's hidden-state layout.

    (B, S, C) → (B, C, 1, S), e.g. (2, 77, 768) → (2, 768, 1, 77).
    """
    embedding = np.asarray(embedding, dtype=np.float32)
    if embedding.ndim != 3:
        raise ValueError(
            f"Expected a (batch, seq, channels) embedding, got shape "
            f"{embedding.shape}")
    return np.ascontiguousarray(
        np.transpose(embedding, (0, 2, 1))[:, :, None, :])


# ═════════════════════════════════════════════════════════════════════
#  Beta-schedule builder (public API)
# ═════════════════════════════════════════════════════════════════════

def get_beta_schedule(
    schedule: str,
    num_timesteps: int = 1000,
    beta_start: float = 0.00085,
    beta_end: float = 0.012,
) -> np.ndarray:
    """Construct a beta noise schedule.

    Args:
        schedule:       ``'linear'`` or ``'scaled_linear'`` (square-root
                        spacing, as in Stable Diffusion).
        num_timesteps:  Number of training diffusion timesteps.
        beta_start:     Starting beta value.
        beta_end:       Ending beta value.

    Returns:
        1-D float32 numpy array of length ``num_timesteps``.
    """
    if schedule == 'linear':
        return np.linspace(beta_start, beta_end, num_timesteps,
                           dtype=np.float32)
    elif schedule == 'scaled_linear':
        return (np.linspace(beta_start ** 0.5, beta_end ** 0.5,
                            num_timesteps, dtype=np.float32) ** 2)
    else:
        raise ValueError(f"Unknown beta schedule: {schedule!r}")


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'perform_guidance',
    'to_hidden_states',
    'get_beta_schedule',
]
