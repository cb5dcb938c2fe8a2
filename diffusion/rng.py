# ╔══════════════════════════════════════════════════════════════════════╗
# ║  SDCore — Latent Diffusion Sampling Core                             ║
# ║  Copyright © 2026 Pictofeed, LLC. All rights reserved.               ║
# ╚══════════════════════════════════════════════════════════════════════╝

"""Seeded random sources for latent initialisation.

Two reference ecosystems are reproduced so that a seed yields the same
starting latents as the corresponding Python tooling:

- **NumPyRandomSource** — ``numpy.random.RandomState(seed).normal``
  (MT19937, polar Box–Muller with a cached second value).
- **TorchRandomSource** — ``torch.manual_seed(seed); torch.randn(shape)``
  on CPU (MT19937, block-wise Box–Muller for ≥ 16 elements, cached
  double-precision Box–Muller below that).

Both share the MT19937 word stream produced by ``RandomState``; they only
differ in how words are turned into normal samples.  Arithmetic is done in
float64 and rounded to float32 at the end, so results match the reference
up to the last float32 bit.
"""
from __future__ import annotations

import enum
import math
import numpy as np
from typing import Optional, Protocol, Sequence, Union, runtime_checkable

_UINT32_RANGE = 2 ** 32
_FLOAT_MASK = (1 << 24) - 1
_DOUBLE_MASK = (1 << 53) - 1


class RNGType(str, enum.Enum):
    """Random number generators available to :class:`StableDiffusionPipeline`."""

    #: Matches the numpy implementation
    NUMPY = 'numpy'
    #: Matches the PyTorch CPU implementation
    TORCH = 'torch'


@runtime_checkable
class RandomSource(Protocol):
    """Source of normally distributed tensors."""

    def normal_array(
        self,
        shape: Sequence[int],
        mean: float = 0.0,
        stdev: float = 1.0,
    ) -> np.ndarray:
        """Draw a float32 array of ``shape`` from N(mean, stdev²)."""
        ...


def _check_seed(seed: int) -> int:
    seed = int(seed)
    if not 0 <= seed < _UINT32_RANGE:
        raise ValueError(f"seed must fit in 32 bits, got {seed}")
    return seed


# ═════════════════════════════════════════════════════════════════════
#  NumPyRandomSource
# ═════════════════════════════════════════════════════════════════════

class NumPyRandomSource:
    """Random source matching ``numpy.random.RandomState(seed)``.

    Successive calls continue the same stream, as repeated
    ``np.random.randn`` calls after ``np.random.seed(seed)`` would.
    """

    def __init__(self, seed: int):
        self.seed = _check_seed(seed)
        self._state = np.random.RandomState(self.seed)

    def normal_array(
        self,
        shape: Sequence[int],
        mean: float = 0.0,
        stdev: float = 1.0,
    ) -> np.ndarray:
        samples = self._state.normal(mean, stdev, size=tuple(shape))
        return np.asarray(samples).astype(np.float32)

    def __repr__(self) -> str:
        return f"NumPyRandomSource(seed={self.seed})"


# ═════════════════════════════════════════════════════════════════════
#  TorchRandomSource
# ═════════════════════════════════════════════════════════════════════

class TorchRandomSource:
    """Random source matching PyTorch's CPU generator.

    Reproduces ``torch.randn`` after ``torch.manual_seed(seed)``.  The
    cached Box–Muller value of the small-tensor path persists between
    calls, just like the generator state it mirrors.
    """

    def __init__(self, seed: int):
        self.seed = _check_seed(seed)
        self._state = np.random.RandomState(self.seed)
        self._next_gauss: Optional[float] = None

    # ---- MT19937 word stream ----

    def _next_words(self, count: int) -> np.ndarray:
        words = self._state.randint(0, _UINT32_RANGE, size=count,
                                    dtype=np.uint32)
        return words.astype(np.uint64)

    def _next_floats(self, count: int) -> np.ndarray:
        """24-bit uniforms in [0, 1), one word each."""
        words = self._next_words(count)
        return (words & _FLOAT_MASK).astype(np.float64) * 2.0 ** -24

    def _next_double(self) -> float:
        """53-bit uniform in [0, 1) from two words, high word first."""
        hi, lo = (int(w) for w in self._next_words(2))
        return (((hi << 32) | lo) & _DOUBLE_MASK) * 2.0 ** -53

    # ---- normal samples ----

    def _next_normal(self, mean: float, stdev: float) -> float:
        if self._next_gauss is not None:
            value = self._next_gauss
            self._next_gauss = None
            return value * stdev + mean
        u1 = self._next_double()
        u2 = self._next_double()
        radius = math.sqrt(-2.0 * math.log1p(-u2))
        theta = 2.0 * math.pi * u1
        self._next_gauss = radius * math.sin(theta)
        return radius * math.cos(theta) * stdev + mean

    @staticmethod
    def _normal_fill_16(block: np.ndarray, mean: float, stdev: float) -> None:
        # block: (n, 16) uniforms, transformed in place
        u1 = 1.0 - block[:, :8]
        u2 = block[:, 8:].copy()
        radius = np.sqrt(-2.0 * np.log(u1))
        theta = 2.0 * math.pi * u2
        block[:, :8] = radius * np.cos(theta) * stdev + mean
        block[:, 8:] = radius * np.sin(theta) * stdev + mean

    def normal_array(
        self,
        shape: Sequence[int],
        mean: float = 0.0,
        stdev: float = 1.0,
    ) -> np.ndarray:
        shape = tuple(int(d) for d in shape)
        count = int(np.prod(shape)) if shape else 1

        if count < 16:
            data = np.array([self._next_normal(mean, stdev)
                             for _ in range(count)], dtype=np.float64)
            return data.reshape(shape).astype(np.float32)

        data = self._next_floats(count)
        n_blocks = count // 16
        head = data[:n_blocks * 16].reshape(n_blocks, 16)
        self._normal_fill_16(head, mean, stdev)
        data[:n_blocks * 16] = head.ravel()

        if count % 16 != 0:
            # The tail is covered by recomputing the last 16 values.
            tail = self._next_floats(16).reshape(1, 16)
            self._normal_fill_16(tail, mean, stdev)
            data[count - 16:] = tail.ravel()

        return data.reshape(shape).astype(np.float32)

    def __repr__(self) -> str:
        return f"TorchRandomSource(seed={self.seed})"


# ═════════════════════════════════════════════════════════════════════
#  Factory
# ═════════════════════════════════════════════════════════════════════

def make_random_source(rng_type: Union[RNGType, str],
                       seed: int) -> RandomSource:
    """Instantiate the random source selected by ``rng_type``."""
    try:
        rng_type = RNGType(rng_type)
    except ValueError:
        raise ValueError(f"Unknown RNG type: {rng_type!r}") from None
    if rng_type is RNGType.TORCH:
        return TorchRandomSource(seed)
    return NumPyRandomSource(seed)


__all__ = [
    'RNGType',
    'RandomSource',
    'NumPyRandomSource',
    'TorchRandomSource',
    'make_random_source',
]
