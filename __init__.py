# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""
SDCore — the denoising engine of a latent-diffusion image generator.

Drives the sampling loop (noise schedulers, classifier-free guidance,
seeded latent initialisation) around externally provided text encoder,
UNet, VAE, ControlNet and safety-checker models.  NumPy is the
computational backend.

Usage::

    import sdcore
    from sdcore.diffusion import Configuration, StableDiffusionPipeline

    sdcore.setup_logging()
    pipeline = StableDiffusionPipeline(text_encoder, unet, decoder)
    images = pipeline.generate_images(Configuration(prompt="a red fox"))
"""
from __future__ import annotations

import logging

__version__ = "0.1.0"
__author__ = "Pictofeed, LLC"

logging.getLogger(__name__).addHandler(logging.NullHandler())

from .log_utils import setup_logging

# ── Sub-packages ──
from . import diffusion

__all__ = [
    "__version__",
    "__author__",
    'setup_logging',
    'diffusion',
]
