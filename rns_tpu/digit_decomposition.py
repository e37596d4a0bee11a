"""
Digit decomposition: split residues into narrow lanes for MAC hardware.

A value v is written little endian in base b, v = sum_i d_i * b^i with
0 <= d_i < b. The base is picked so that a MAC unit summing
`accumulation_count` products of two digits never overflows its accumulator:

    accumulation_count * (b - 1)^2 < 2^accumulator_bits

With the default TPU geometry (8-bit lanes, 32-bit accumulators, 256-deep
tiles) this gives b = 256, i.e. plain byte decomposition.
"""
import dataclasses
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

import polymul_errors as errors

jax.config.update("jax_enable_x64", True)

DEFAULT_LANE_BITS = 8
DEFAULT_ACCUMULATOR_BITS = 32
DEFAULT_ACCUMULATION_COUNT = 256


def choose_base(lane_bits: int = DEFAULT_LANE_BITS,
                accumulator_bits: int = DEFAULT_ACCUMULATOR_BITS,
                accumulation_count: int = DEFAULT_ACCUMULATION_COUNT) -> int:
    """Largest power-of-two base b <= 2^lane_bits that keeps the accumulator exact."""
    if lane_bits < 1 or accumulator_bits < 1 or accumulation_count < 1:
        raise ValueError("lane_bits, accumulator_bits and accumulation_count must be positive")
    for width in range(lane_bits, 0, -1):
        base = 1 << width
        if accumulation_count * (base - 1) ** 2 < 2**accumulator_bits:
            return base
    raise ValueError(
        f"no digit base fits {accumulation_count} accumulations in {accumulator_bits} bits")


def lane_dtype(base: int):
    """Smallest unsigned dtype that holds digits of the given base."""
    if base <= 2**8:
        return jnp.uint8
    if base <= 2**16:
        return jnp.uint16
    return jnp.uint32


@dataclasses.dataclass(frozen=True)
class DigitExpansion:
    """Little-endian digits of one non-negative integer."""
    digits: Tuple[int, ...]
    base: int

    def __len__(self):
        return len(self.digits)


class DigitDecomposer():
    """Decompose values into digits of a fixed base.

    Args:
        base: Explicit digit base. When omitted, choose_base picks one from
            the lane geometry below.
        lane_bits: Width of one MAC input lane.
        accumulator_bits: Width of the MAC accumulator.
        accumulation_count: Maximum number of digit products summed in one
            accumulator (the tile depth).
    """
    def __init__(self, base: Optional[int] = None,
                 lane_bits: int = DEFAULT_LANE_BITS,
                 accumulator_bits: int = DEFAULT_ACCUMULATOR_BITS,
                 accumulation_count: int = DEFAULT_ACCUMULATION_COUNT):
        if base is None:
            base = choose_base(lane_bits, accumulator_bits, accumulation_count)
        if base < 2:
            raise ValueError(f"digit base must be at least 2, got {base}")
        if base > 2**lane_bits:
            raise ValueError(f"digit base {base} does not fit {lane_bits}-bit lanes")
        if accumulation_count * (base - 1) ** 2 >= 2**accumulator_bits:
            raise ValueError(
                f"digit base {base} overflows a {accumulator_bits}-bit accumulator "
                f"after {accumulation_count} accumulations")
        self.base = base
        self.lane_bits = lane_bits
        self.accumulator_bits = accumulator_bits
        self.accumulation_count = accumulation_count
        self.dtype = lane_dtype(base)

    def num_digits(self, max_value: int) -> int:
        """Digits needed for every value in [0, max_value]."""
        count = 1
        while self.base ** count <= max_value:
            count += 1
        return count

    ########################
    # Scalar interface
    ########################
    def decompose(self, value: int, num_digits: Optional[int] = None) -> DigitExpansion:
        value = int(value)
        if value < 0:
            raise errors.CoefficientOverflow(f"cannot decompose negative value {value}")
        if num_digits is None:
            num_digits = self.num_digits(value)
        digits = []
        remainder = value
        for _ in range(num_digits):
            remainder, digit = divmod(remainder, self.base)
            digits.append(digit)
        if remainder:
            raise errors.CoefficientOverflow(
                f"{value} needs more than {num_digits} base-{self.base} digits")
        return DigitExpansion(digits=tuple(digits), base=self.base)

    def recompose(self, expansion: DigitExpansion) -> int:
        if expansion.base != self.base:
            raise ValueError(f"expansion is base {expansion.base}, decomposer is base {self.base}")
        return recompose(expansion)

    ########################
    # Array interface
    ########################
    def decompose_array(self, values, num_digits: int) -> jnp.ndarray:
        """Digits of every element, stacked on a new trailing axis.

        Args:
            values: Non-negative integers below 2^63, any shape.
            num_digits: Fixed digit count D.

        Returns:
            Array of shape values.shape + (D,) in the lane dtype.
        """
        values = jnp.asarray(values, dtype=jnp.uint64)
        limit = self.base ** num_digits
        if limit < 2**64 and values.size and int(jnp.max(values)) >= limit:
            raise errors.CoefficientOverflow(
                f"values need more than {num_digits} base-{self.base} digits")
        base = jnp.uint64(self.base)
        digits = []
        remainder = values
        for _ in range(num_digits):
            digits.append(remainder % base)
            remainder = remainder // base
        return jnp.stack(digits, axis=-1).astype(self.dtype)

    def recompose_array(self, digits: jnp.ndarray) -> np.ndarray:
        """Exact inverse of decompose_array, returned as Python integers."""
        digits = np.asarray(digits).astype(object)
        weights = np.array([self.base ** i for i in range(digits.shape[-1])], dtype=object)
        return (digits * weights).sum(axis=-1)


def decompose(value: int, base: int) -> DigitExpansion:
    """Decompose with an explicit base and no lane constraints."""
    return DigitDecomposer(base=base, lane_bits=max(1, (base - 1).bit_length()),
                           accumulator_bits=2 * max(1, (base - 1).bit_length()) + 1,
                           accumulation_count=1).decompose(value)


def recompose(expansion: DigitExpansion) -> int:
    value = 0
    for digit in reversed(expansion.digits):
        value = value * expansion.base + int(digit)
    return value
