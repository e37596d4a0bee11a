"""
MAC backends: fixed-size, narrow-lane matrix multiply-accumulate.

The matrix conversion path only talks to hardware through this contract:

    mac(lhs, rhs, accumulator=None) -> lhs @ rhs (+ accumulator)

where lhs is a (T, T) tile and rhs a (T, W) block with W <= T, every input
lane is an unsigned integer below 2^lane_bits and the result is exact in an
accumulator of accumulator_bits. The caller is responsible for choosing digits
small enough that the accumulator cannot overflow (see digit_decomposition).

SoftwareMACBackend is the pure NumPy reference and the fallback used whenever
no backend is configured or the configured one is unavailable.
JaxMACBackend lowers the same product to an XLA dot with u8 operands and u32
accumulation, which maps onto the TPU MXU.
"""
import functools
from typing import Optional

import jax
import jax.numpy as jnp
import numpy as np

import polymul_errors as errors

jax.config.update("jax_enable_x64", True)

DEFAULT_TILE_SIZE = 256
DEFAULT_LANE_BITS = 8
DEFAULT_ACCUMULATOR_BITS = 32


def accumulator_dtype(accumulator_bits: int):
    return np.uint32 if accumulator_bits <= 32 else np.uint64


########################
# Base Backend Class
########################
class MACBackendBase():
    """Contract for a tile MAC unit.

    Args:
        tile_size: T, the side of the square lhs tile.
        lane_bits: Width of one input lane.
        accumulator_bits: Width of one accumulator, at most 64.
    """
    name = "base"

    def __init__(self, tile_size: int = DEFAULT_TILE_SIZE,
                 lane_bits: int = DEFAULT_LANE_BITS,
                 accumulator_bits: int = DEFAULT_ACCUMULATOR_BITS):
        if tile_size < 1:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        if not 1 <= lane_bits <= 16:
            raise ValueError(f"lane_bits must lie in [1, 16], got {lane_bits}")
        if not 2 * lane_bits <= accumulator_bits <= 64:
            raise ValueError(
                f"accumulator_bits must lie in [{2 * lane_bits}, 64], got {accumulator_bits}")
        self.tile_size = tile_size
        self.lane_bits = lane_bits
        self.accumulator_bits = accumulator_bits

    def __repr__(self):
        return (f"{type(self).__name__}(tile_size={self.tile_size}, lane_bits={self.lane_bits}, "
                f"accumulator_bits={self.accumulator_bits})")

    def ensure_available(self):
        """Raise BackendUnavailable when the unit cannot be used."""
        return None

    def software_equivalent(self):
        """A software backend with the same tile geometry."""
        return SoftwareMACBackend(self.tile_size, self.lane_bits, self.accumulator_bits)

    def check_operands(self, lhs: np.ndarray, rhs: np.ndarray, accumulator=None):
        t = self.tile_size
        if lhs.shape != (t, t):
            raise ValueError(f"lhs tile must have shape {(t, t)}, got {lhs.shape}")
        if rhs.ndim != 2 or rhs.shape[0] != t or not 1 <= rhs.shape[1] <= t:
            raise ValueError(f"rhs block must have shape ({t}, W) with 1 <= W <= {t}, got {rhs.shape}")
        if accumulator is not None and accumulator.shape != (t, rhs.shape[1]):
            raise ValueError(f"accumulator must have shape {(t, rhs.shape[1])}, got {accumulator.shape}")
        limit = 1 << self.lane_bits
        for operand in (lhs, rhs):
            if operand.dtype.kind != "u":
                raise ValueError(f"MAC operands must be unsigned integers, got {operand.dtype}")
            if operand.size and int(operand.max()) >= limit:
                raise ValueError(f"MAC operand exceeds {self.lane_bits}-bit lanes")

    def mac(self, lhs, rhs, accumulator=None):
        raise NotImplementedError("Subclasses must implement this method")


########################
# Software Backend
########################
class SoftwareMACBackend(MACBackendBase):
    """Exact NumPy tile product, the reference every other backend must match."""
    name = "software"

    def mac(self, lhs, rhs, accumulator=None):
        lhs = np.asarray(lhs)
        rhs = np.asarray(rhs)
        accumulator = None if accumulator is None else np.asarray(accumulator)
        self.check_operands(lhs, rhs, accumulator)

        # u64 cannot overflow: T * (2^16 - 1)^2 < 2^64 for any sane tile size
        result = lhs.astype(np.uint64) @ rhs.astype(np.uint64)
        if accumulator is not None:
            result = result + accumulator.astype(np.uint64)
        if self.accumulator_bits < 64 and result.size and int(result.max()) >> self.accumulator_bits:
            raise errors.BackendError(f"{self.accumulator_bits}-bit accumulator overflow")
        return result.astype(accumulator_dtype(self.accumulator_bits))


########################
# JAX Backend
########################
@functools.partial(jax.jit, static_argnames=("wide_inputs",))
def _einsum_mac(lhs: jax.Array, rhs: jax.Array, wide_inputs: bool) -> jax.Array:
    if wide_inputs:
        # NVIDIA GPU does not support uint8 dot, widen the lanes first
        return jnp.einsum("ik,kj->ij", lhs.astype(jnp.uint32), rhs.astype(jnp.uint32),
                          preferred_element_type=jnp.uint64)
    return jnp.einsum("ik,kj->ij", lhs, rhs, preferred_element_type=jnp.uint32)


class JaxMACBackend(MACBackendBase):
    """MAC through an XLA dot on a JAX device.

    Args:
        platform: Optional JAX platform name ("tpu", "gpu", "cpu"). When the
            platform has no device, ensure_available raises BackendUnavailable.
    """
    name = "jax"

    def __init__(self, tile_size: int = DEFAULT_TILE_SIZE,
                 lane_bits: int = DEFAULT_LANE_BITS,
                 accumulator_bits: int = DEFAULT_ACCUMULATOR_BITS,
                 platform: Optional[str] = None):
        super().__init__(tile_size, lane_bits, accumulator_bits)
        self.platform = platform
        self.device = None

    def ensure_available(self):
        try:
            devices = jax.devices(self.platform) if self.platform else jax.devices()
        except RuntimeError as err:
            raise errors.BackendUnavailable(f"no JAX device for platform {self.platform!r}") from err
        if not devices:
            raise errors.BackendUnavailable(f"no JAX device for platform {self.platform!r}")
        self.device = devices[0]

    def mac(self, lhs, rhs, accumulator=None):
        lhs = np.asarray(lhs)
        rhs = np.asarray(rhs)
        accumulator = None if accumulator is None else np.asarray(accumulator)
        self.check_operands(lhs, rhs, accumulator)
        if self.device is None:
            self.ensure_available()

        wide_inputs = "NVIDIA" in self.device.device_kind or self.lane_bits > 8 or self.accumulator_bits > 32
        lhs_dev = jax.device_put(lhs, self.device)
        rhs_dev = jax.device_put(rhs, self.device)
        result = np.asarray(_einsum_mac(lhs_dev, rhs_dev, wide_inputs)).astype(np.uint64)
        if accumulator is not None:
            result = result + accumulator.astype(np.uint64)
        if self.accumulator_bits < 64 and result.size and int(result.max()) >> self.accumulator_bits:
            raise errors.BackendError(f"{self.accumulator_bits}-bit accumulator overflow")
        return result.astype(accumulator_dtype(self.accumulator_bits))
