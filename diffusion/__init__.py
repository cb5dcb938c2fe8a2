# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝
"""sdcore.diffusion — Schedulers, guidance, random sources and pipelines.

Usage::

    from sdcore.diffusion import (
        Configuration,
        SchedulerType,
        RNGType,
        StableDiffusionPipeline,
    )

    pipeline = StableDiffusionPipeline(text_encoder, unet, decoder)
    images = pipeline.generate_images(
        Configuration(prompt="a photo of an astronaut riding a horse",
                      step_count=25,
                      scheduler_type=SchedulerType.DPM_SOLVER_MULTISTEP,
                      rng_type=RNGType.TORCH,
                      seed=93))
"""
from __future__ import annotations

# ── Schedulers ──
from .schedulers import (
    SchedulerType,
    Scheduler,
    PNDMScheduler,
    DPMSolverMultistepScheduler,
    TRAIN_STEP_COUNT,
    scheduler_class,
    make_scheduler,
)

# ── Random sources ──
from .rng import (
    RNGType,
    RandomSource,
    NumPyRandomSource,
    TorchRandomSource,
    make_random_source,
)

# ── Model interfaces ──
from .models import (
    ResourceManaging,
    TextEncoder,
    Unet,
    Encoder,
    Decoder,
    ControlNet,
    SafetyChecker,
)

# ── Configuration & errors ──
from .configuration import Configuration, GenerationMode
from .errors import ConfigurationError, StartingImageProvidedWithoutEncoder

# ── Pipelines ──
from .pipelines import (
    Progress,
    DiffusionPipeline,
    StableDiffusionPipeline,
)

# ── Utilities ──
from .utils import (
    perform_guidance,
    to_hidden_states,
    get_beta_schedule,
)

__all__ = [
    # Schedulers
    'SchedulerType',
    'Scheduler',
    'PNDMScheduler',
    'DPMSolverMultistepScheduler',
    'TRAIN_STEP_COUNT',
    'scheduler_class',
    'make_scheduler',
    # Random sources
    'RNGType',
    'RandomSource',
    'NumPyRandomSource',
    'TorchRandomSource',
    'make_random_source',
    # Model interfaces
    'ResourceManaging',
    'TextEncoder',
    'Unet',
    'Encoder',
    'Decoder',
    'ControlNet',
    'SafetyChecker',
    # Configuration & errors
    'Configuration',
    'GenerationMode',
    'ConfigurationError',
    'StartingImageProvidedWithoutEncoder',
    # Pipelines
    'Progress',
    'DiffusionPipeline',
    'StableDiffusionPipeline',
    # Utilities
    'perform_guidance',
    'to_hidden_states',
    'get_beta_schedule',
]
