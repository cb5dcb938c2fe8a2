# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""Pipeline error types."""
from __future__ import annotations


class ConfigurationError(ValueError):
    """The generation configuration cannot be run as given."""


class StartingImageProvidedWithoutEncoder(ConfigurationError):
    """Image-to-image was requested but the pipeline has no encoder."""

    def __init__(self, message: str = "A starting image was provided but "
                                      "the pipeline has no encoder"):
        super().__init__(message)


__all__ = [
    'ConfigurationError',
    'StartingImageProvidedWithoutEncoder',
]
