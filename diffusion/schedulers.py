# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Noise schedulers for latent diffusion sampling.

Both schedulers share one contract (``init_noise_sigma``,
``calculate_timesteps``, ``step``, ``add_noise``) and differ only in how a
latent is advanced from one time step to the next:

- **PNDMScheduler** — Pseudo Numerical Diffusion Models (Liu et al. 2022),
  linear multi-step (PLMS) update with a low-order warm-up.
- **DPMSolverMultistepScheduler** — DPM-Solver++ (Lu et al. 2022),
  second-order multistep solver on the data prediction.

A scheduler instance owns the step history of exactly one latent sample, so
a pipeline generating several images keeps one instance per image.
"""
from __future__ import annotations

import enum
import logging
import math
import numpy as np
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, List, Optional, Sequence, Tuple, Type, Union

from sdcore.diffusion.utils import get_beta_schedule

logger = logging.getLogger(__name__)

TRAIN_STEP_COUNT = 1000


class SchedulerType(str, enum.Enum):
    """Schedulers available to :class:`StableDiffusionPipeline`."""

    #: Pseudo-linear multi-step (PLMS) method
    PNDM = 'pndm'
    #: Second order DPM-Solver++ multistep method
    DPM_SOLVER_MULTISTEP = 'dpmpp'


# ═════════════════════════════════════════════════════════════════════
#  Helpers
# ═════════════════════════════════════════════════════════════════════

def _weighted_sum(weights: Sequence[float],
                  values: Sequence[np.ndarray]) -> np.ndarray:
    """Σ wᵢ·xᵢ in float32."""
    out = np.zeros_like(values[0], dtype=np.float32)
    for w, v in zip(weights, values):
        out += np.float32(w) * v
    return out


def _round_half_away(values: np.ndarray) -> np.ndarray:
    # np.round is round-half-to-even; schedules round .5 upwards.
    return np.floor(np.asarray(values, dtype=np.float64) + 0.5)


# ═════════════════════════════════════════════════════════════════════
#  Scheduler — shared contract
# ═════════════════════════════════════════════════════════════════════

class Scheduler(ABC):
    """Base class for the sampling schedulers.

    Builds the β / ᾱ tables and implements the parts of the contract that
    do not depend on the update rule: strength-dependent time-step slicing
    and forward noise mixing for image-to-image.

    Args:
        step_count:       Number of inference steps.
        train_step_count: Number of training diffusion steps T.
        beta_schedule:    ``'linear'`` or ``'scaled_linear'``.
        beta_start / beta_end: Beta range.
    """

    def __init__(
        self,
        step_count: int = 50,
        train_step_count: int = TRAIN_STEP_COUNT,
        beta_schedule: str = 'scaled_linear',
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
    ):
        if step_count < 1:
            raise ValueError(f"step_count must be >= 1, got {step_count}")
        if step_count > train_step_count:
            raise ValueError(
                f"step_count ({step_count}) cannot exceed "
                f"train_step_count ({train_step_count})")

        self.step_count = step_count
        self.train_step_count = train_step_count
        self.beta_schedule = beta_schedule

        self.betas = get_beta_schedule(beta_schedule, train_step_count,
                                       beta_start, beta_end)
        self.alphas = 1.0 - self.betas
        self.alphas_cumprod = np.cumprod(self.alphas).astype(np.float32)

        self.timesteps: List[int] = []
        self.counter = 0

    # ---- public API ----

    @classmethod
    def max_step_count(cls, train_step_count: int = TRAIN_STEP_COUNT) -> int:
        """Largest ``step_count`` whose schedule fits the training table."""
        return train_step_count

    @property
    def init_noise_sigma(self) -> float:
        """Standard deviation of the initial noise draw."""
        return 1.0

    def calculate_timesteps(self, strength: Optional[float] = None) -> List[int]:
        """Time steps to visit, highest noise first.

        Without ``strength`` the full schedule is returned.  With a
        strength in [0, 1] only the last ``int(step_count * strength)``
        steps are kept, so a weaker strength starts later in the
        trajectory and runs fewer steps.
        """
        if strength is None:
            return list(self.timesteps)
        return list(self.timesteps[self._start_step(strength):])

    def add_noise(
        self,
        original_sample: np.ndarray,
        noise: Union[np.ndarray, Sequence[np.ndarray]],
        strength: float,
    ) -> Union[np.ndarray, List[np.ndarray]]:
        """Forward-diffuse an encoded image to the first step for ``strength``.

        Each noise tensor is mixed with the same original sample::

            x = signal * original + noise_scale * noise

        where (signal, noise_scale) are the scheduler's coefficients at the
        first visited time step.  With no steps to run (strength 0) the
        original sample is returned unchanged.
        """
        single = isinstance(noise, np.ndarray)
        noises = [noise] if single else list(noise)

        start = self._start_step(strength)
        if start >= len(self.timesteps):
            signal, noise_scale = 1.0, 0.0
        else:
            signal, noise_scale = self._noise_coefficients(self.timesteps[start])

        original = np.asarray(original_sample, dtype=np.float32)
        noisy = [
            _weighted_sum([signal, noise_scale],
                          [original, np.asarray(n, dtype=np.float32)])
            for n in noises
        ]
        return noisy[0] if single else noisy

    @abstractmethod
    def step(self, output: np.ndarray, timestep: int,
             sample: np.ndarray) -> np.ndarray:
        """Compute the previous (less noisy) sample from the model output."""

    # ---- internals ----

    def _start_step(self, strength: float) -> int:
        init_timestep = int(self.step_count * strength)
        init_timestep = min(max(init_timestep, 0), self.step_count)
        return self.step_count - init_timestep

    def _noise_coefficients(self, timestep: int) -> Tuple[float, float]:
        alpha_prod = float(self.alphas_cumprod[timestep])
        return math.sqrt(alpha_prod), math.sqrt(1.0 - alpha_prod)

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(step_count={self.step_count}, "
                f"train_step_count={self.train_step_count}, "
                f"beta_schedule={self.beta_schedule!r})")


# ═════════════════════════════════════════════════════════════════════
#  PNDMScheduler
# ═════════════════════════════════════════════════════════════════════

class PNDMScheduler(Scheduler):
    """Pseudo Numerical Diffusion Model scheduler (Liu et al. 2022).

    Uses a 4th-order linear multi-step method.  Until four noise estimates
    are available the step falls back to the lower-order Adams–Bashforth
    weights (1, 2 and 3 estimates).

    Args:
        step_count:       Inference steps.
        train_step_count: Training steps.
        beta_schedule:    Schedule type.
        beta_start / beta_end: Beta range.
        steps_offset:     Offset added to every inference time step.
    """

    def __init__(
        self,
        step_count: int = 50,
        train_step_count: int = TRAIN_STEP_COUNT,
        beta_schedule: str = 'scaled_linear',
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
        steps_offset: int = 1,
    ):
        super().__init__(step_count, train_step_count, beta_schedule,
                         beta_start, beta_end)
        if step_count > self.max_step_count(train_step_count, steps_offset):
            raise ValueError(
                f"step_count ({step_count}) with steps_offset {steps_offset} "
                f"runs past the last of {train_step_count} training steps")
        self.steps_offset = steps_offset
        self.step_ratio = train_step_count // step_count

        forward_steps = [i * self.step_ratio + steps_offset
                         for i in range(step_count)]
        self.timesteps = forward_steps[::-1]
        self._ets: Deque[np.ndarray] = deque(maxlen=4)

    @classmethod
    def max_step_count(cls, train_step_count: int = TRAIN_STEP_COUNT,
                       steps_offset: int = 1) -> int:
        # Top time step (n - 1) * (T // n) + offset must stay below T.
        n = train_step_count
        while n > 1 and (n - 1) * (train_step_count // n) + steps_offset >= train_step_count:
            n -= 1
        return n

    def _get_prev_sample(self, sample: np.ndarray, t: int,
                         t_prev: int, model_output: np.ndarray) -> np.ndarray:
        alpha_prod_t = float(self.alphas_cumprod[t])
        alpha_prod_t_prev = float(self.alphas_cumprod[max(t_prev, 0)])
        beta_prod_t = 1.0 - alpha_prod_t
        beta_prod_t_prev = 1.0 - alpha_prod_t_prev

        # DDIM update with ε folded into a single coefficient
        sample_coeff = math.sqrt(alpha_prod_t_prev / alpha_prod_t)
        model_output_denom_coeff = (
            alpha_prod_t * math.sqrt(beta_prod_t_prev)
            + math.sqrt(alpha_prod_t * beta_prod_t * alpha_prod_t_prev)
        )
        model_coeff = -(alpha_prod_t_prev - alpha_prod_t) / model_output_denom_coeff
        return _weighted_sum([sample_coeff, model_coeff], [sample, model_output])

    def step(self, output: np.ndarray, timestep: int,
             sample: np.ndarray) -> np.ndarray:
        """PLMS (linear multi-step) step with low-order warm-up."""
        output = np.asarray(output, dtype=np.float32)
        sample = np.asarray(sample, dtype=np.float32)
        t = int(timestep)
        t_prev = t - self.step_ratio

        self._ets.append(output.copy())

        n = len(self._ets)
        if n == 1:
            et = self._ets[-1]
        elif n == 2:
            et = _weighted_sum([3 / 2, -1 / 2],
                               [self._ets[-1], self._ets[-2]])
        elif n == 3:
            et = _weighted_sum([23 / 12, -16 / 12, 5 / 12],
                               [self._ets[-1], self._ets[-2], self._ets[-3]])
        else:
            et = _weighted_sum([55 / 24, -59 / 24, 37 / 24, -9 / 24],
                               [self._ets[-1], self._ets[-2],
                                self._ets[-3], self._ets[-4]])

        prev = self._get_prev_sample(sample, t, t_prev, et)
        self.counter += 1
        return prev


# ═════════════════════════════════════════════════════════════════════
#  DPMSolverMultistepScheduler (DPM-Solver++)
# ═════════════════════════════════════════════════════════════════════

class DPMSolverMultistepScheduler(Scheduler):
    """DPM-Solver++ multistep scheduler (Lu et al. 2022).

    A fast ODE solver for diffusion models that achieves high-quality
    samples in 15–25 steps.  The first call has no history and takes a
    first-order (DDIM-equivalent) step; every later call combines the
    current and previous data predictions in a second-order update.

    Only the VP-type noise schedule is supported: ``alpha_t = sqrt(ᾱ)``,
    ``sigma_t = sqrt(1 − ᾱ)``, ``lambda_t = log(alpha_t) − log(sigma_t)``.

    Args:
        step_count:        Inference steps.
        train_step_count:  Training diffusion steps.
        beta_schedule:     Schedule type.
        beta_start / beta_end: Beta range.
        solver_order:      ODE solver order (1 or 2).
        lower_order_final: Use first-order steps at the end of schedules
                           shorter than 15 steps.
    """

    def __init__(
        self,
        step_count: int = 50,
        train_step_count: int = TRAIN_STEP_COUNT,
        beta_schedule: str = 'scaled_linear',
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
        solver_order: int = 2,
        lower_order_final: bool = False,
    ):
        super().__init__(step_count, train_step_count, beta_schedule,
                         beta_start, beta_end)
        if solver_order not in (1, 2):
            raise ValueError(f"solver_order must be 1 or 2, got {solver_order}")
        self.solver_order = solver_order
        self.lower_order_final = lower_order_final

        self.alpha_t = np.sqrt(self.alphas_cumprod)
        self.sigma_t = np.sqrt(1.0 - self.alphas_cumprod)
        self.lambda_t = np.log(self.alpha_t) - np.log(self.sigma_t)

        self.timesteps = [
            int(t) for t in _round_half_away(
                np.linspace(train_step_count - 1, 0, step_count))
        ]

        self._model_outputs: Deque[np.ndarray] = deque(maxlen=solver_order)
        self._model_timesteps: Deque[int] = deque(maxlen=solver_order)
        self._lower_order_nums = 0

    @property
    def init_noise_sigma(self) -> float:
        return float(self.sigma_t[self.timesteps[0]])

    def _noise_coefficients(self, timestep: int) -> Tuple[float, float]:
        return float(self.alpha_t[timestep]), float(self.sigma_t[timestep])

    def _convert_model_output(self, model_output: np.ndarray,
                              sample: np.ndarray, t: int) -> np.ndarray:
        """Convert the ε prediction to a data prediction x₀."""
        alpha_s = np.float32(self.alpha_t[t])
        sigma_s = np.float32(self.sigma_t[t])
        return ((sample - sigma_s * model_output) / alpha_s).astype(np.float32)

    def _dpm_solver_first_order(self, model_output: np.ndarray,
                                sample: np.ndarray,
                                t: int, t_prev: int) -> np.ndarray:
        """First-order DPM-Solver++ (equivalent to DDIM)."""
        lambda_t = float(self.lambda_t[t_prev])
        lambda_s = float(self.lambda_t[t])
        alpha_t = float(self.alpha_t[t_prev])
        sigma_t = float(self.sigma_t[t_prev])
        sigma_s = float(self.sigma_t[t])
        h = lambda_t - lambda_s

        return _weighted_sum(
            [sigma_t / sigma_s, -alpha_t * math.expm1(-h)],
            [sample, model_output])

    def _dpm_solver_second_order(self, model_outputs: Sequence[np.ndarray],
                                 timesteps: Sequence[int],
                                 t_prev: int,
                                 sample: np.ndarray) -> np.ndarray:
        """Second-order multistep DPM-Solver++ (midpoint form)."""
        s0, s1 = timesteps[-1], timesteps[-2]
        m0, m1 = model_outputs[-1], model_outputs[-2]

        lambda_t = float(self.lambda_t[t_prev])
        lambda_s0 = float(self.lambda_t[s0])
        lambda_s1 = float(self.lambda_t[s1])
        alpha_t = float(self.alpha_t[t_prev])
        sigma_t = float(self.sigma_t[t_prev])
        sigma_s0 = float(self.sigma_t[s0])

        h = lambda_t - lambda_s0
        h_0 = lambda_s0 - lambda_s1
        if h == 0.0 or h_0 == 0.0:
            # Zero-length interval: the correction term vanishes.
            return self._dpm_solver_first_order(m0, sample, s0, t_prev)

        r0 = h_0 / h
        d1 = _weighted_sum([1.0 / r0, -1.0 / r0], [m0, m1])
        return _weighted_sum(
            [sigma_t / sigma_s0,
             -alpha_t * math.expm1(-h),
             -0.5 * alpha_t * math.expm1(-h)],
            [sample, m0, d1])

    def step(self, output: np.ndarray, timestep: int,
             sample: np.ndarray) -> np.ndarray:
        """One step of DPM-Solver++."""
        output = np.asarray(output, dtype=np.float32)
        sample = np.asarray(sample, dtype=np.float32)
        t = int(timestep)

        n_steps = len(self.timesteps)
        step_idx = self.timesteps.index(t) if t in self.timesteps else n_steps - 1
        t_prev = 0 if step_idx == n_steps - 1 else self.timesteps[step_idx + 1]

        lower_order_final = (self.lower_order_final and n_steps < 15
                             and step_idx >= n_steps - 2)

        data_pred = self._convert_model_output(output, sample, t)
        self._model_outputs.append(data_pred)
        self._model_timesteps.append(t)

        if self._lower_order_nums < 1 or self.solver_order == 1 or lower_order_final:
            prev = self._dpm_solver_first_order(data_pred, sample, t, t_prev)
        else:
            prev = self._dpm_solver_second_order(
                self._model_outputs, self._model_timesteps, t_prev, sample)

        if self._lower_order_nums < self.solver_order:
            self._lower_order_nums += 1
        self.counter += 1
        return prev


# ═════════════════════════════════════════════════════════════════════
#  Factory
# ═════════════════════════════════════════════════════════════════════

_SCHEDULERS = {
    SchedulerType.PNDM: PNDMScheduler,
    SchedulerType.DPM_SOLVER_MULTISTEP: DPMSolverMultistepScheduler,
}


def scheduler_class(scheduler_type: Union[SchedulerType, str]) -> Type[Scheduler]:
    """Scheduler class selected by ``scheduler_type``."""
    try:
        return _SCHEDULERS[SchedulerType(scheduler_type)]
    except ValueError:
        raise ValueError(
            f"Unknown scheduler type: {scheduler_type!r}") from None


def make_scheduler(scheduler_type: Union[SchedulerType, str],
                   step_count: int, **kwargs) -> Scheduler:
    """Instantiate the scheduler selected by ``scheduler_type``."""
    cls = scheduler_class(scheduler_type)
    logger.debug("Creating %s with %d steps", cls.__name__, step_count)
    return cls(step_count=step_count, **kwargs)


# ═════════════════════════════════════════════════════════════════════
#  Exports
# ═════════════════════════════════════════════════════════════════════

__all__ = [
    'SchedulerType',
    'Scheduler',
    'PNDMScheduler',
    'DPMSolverMultistepScheduler',
    'TRAIN_STEP_COUNT',
    'scheduler_class',
    'make_scheduler',
]
