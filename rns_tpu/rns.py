"""
RNS: Residue Number System base registry and converter.

A polynomial with wide coefficients is split into k residue lanes, one per
modulus of an RNSBaseSet, and rebuilt with the Chinese Remainder Theorem.
Residues are JAX uint64 arrays of shape (ring_dim, k): the moduli are the last
dimension, as everywhere else in this package. Every modulus is below 2^31 so
the product of two residues never leaves an unsigned 64-bit word.
"""
import concurrent.futures
import dataclasses
import math
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

import polymul_errors as errors
import polymul_util as util
from polynomial import Polynomial

jax.config.update("jax_enable_x64", True)

MAX_MODULUS_BITS = 31
DEFAULT_MODULUS_BITS = 30


########################
# Base Registry
########################
@dataclasses.dataclass(frozen=True)
class RNSBaseSet:
    """Validated pairwise-coprime moduli and their CRT constants.

    Build instances with RNSBaseSet.build / generate / for_bound; the object is
    immutable and may be shared by concurrent conversions.

    Attributes:
        moduli: m_1..m_k.
        product: M = prod(m_i).
        q_hat: M / m_i for each i.
        q_hat_inv: (M / m_i)^-1 mod m_i for each i (the CRT constants c_i).
    """
    moduli: Tuple[int, ...]
    product: int
    q_hat: Tuple[int, ...]
    q_hat_inv: Tuple[int, ...]

    @classmethod
    def build(cls, moduli):
        moduli = tuple(int(m) for m in moduli)
        if not moduli:
            raise ValueError("an RNS base needs at least one modulus")
        for m in moduli:
            if not 2 <= m < 2**MAX_MODULUS_BITS:
                raise ValueError(f"modulus {m} must lie in [2, 2^{MAX_MODULUS_BITS})")
        for i in range(len(moduli)):
            for j in range(i + 1, len(moduli)):
                g = math.gcd(moduli[i], moduli[j])
                if g != 1:
                    raise errors.ModulusNotCoprime(
                        f"moduli {moduli[i]} and {moduli[j]} share the factor {g}")

        product = math.prod(moduli)
        q_hat = tuple(product // m for m in moduli)
        q_hat_inv = []
        for m, hat in zip(moduli, q_hat):
            try:
                q_hat_inv.append(util.modinv(hat, m))
            except ValueError as err:
                raise errors.NonInvertibleModulus(
                    f"(M/{m}) has no inverse modulo {m}") from err
        return cls(moduli=moduli, product=product, q_hat=q_hat, q_hat_inv=tuple(q_hat_inv))

    @classmethod
    def generate(cls, count: int, bit_width: int = DEFAULT_MODULUS_BITS, ring_degree: Optional[int] = None):
        """Pick the count largest primes below 2^bit_width.

        When ring_degree is given the primes are NTT friendly (p = 1 mod 2n).
        """
        if not 2 <= bit_width <= MAX_MODULUS_BITS:
            raise ValueError(f"bit_width must lie in [2, {MAX_MODULUS_BITS}], got {bit_width}")
        if ring_degree is None:
            moduli = util.find_primes_below(count, bit_width)
        else:
            moduli = util.find_moduli_ntt(count, bit_width, 2 * ring_degree)
        if len(moduli) < count:
            raise ValueError(f"only {len(moduli)} suitable primes below 2^{bit_width}, need {count}")
        return cls.build(moduli)

    @classmethod
    def for_bound(cls, bound: int, signed: bool = True, bit_width: int = DEFAULT_MODULUS_BITS):
        """Smallest generated base whose combined modulus covers |value| <= bound."""
        required = 2 * bound + 1 if signed else bound + 1
        # Every generated prime exceeds 2^(bit_width - 1)
        count = max(1, -(-required.bit_length() // (bit_width - 1)))
        moduli = util.find_primes_below(count, bit_width)
        while len(moduli) == count and math.prod(moduli) < required:
            count += 1
            moduli = util.find_primes_below(count, bit_width)
        if math.prod(moduli) < required:
            raise ValueError(f"not enough primes below 2^{bit_width} to cover {bound}")
        return cls.build(moduli)

    @property
    def size(self) -> int:
        return len(self.moduli)

    @property
    def moduli_array(self) -> jnp.ndarray:
        return jnp.array(self.moduli, dtype=jnp.uint64)

    @property
    def q_hat_inv_array(self) -> jnp.ndarray:
        return jnp.array(self.q_hat_inv, dtype=jnp.uint64)

    def covers(self, bound: int, signed: bool) -> bool:
        """True when every integer with |value| <= bound round-trips losslessly."""
        if signed:
            return 2 * bound < self.product
        return bound < self.product


########################
# Residue Representation
########################
@dataclasses.dataclass(frozen=True, eq=False)
class ResidueRepresentation:
    """Residue lanes of one polynomial.

    Attributes:
        residues: uint64 array of shape (ring_degree, k), lane i reduced mod m_i.
        ring_degree: n of the source polynomial.
        modulus: q of the source polynomial, reapplied after reconstruction.
        signed: Reconstruct to the centered representative in (-M/2, M/2].
    """
    residues: jnp.ndarray
    ring_degree: int
    modulus: Optional[int] = None
    signed: bool = False

    @property
    def num_lanes(self) -> int:
        return self.residues.shape[-1]

    def lane(self, index: int) -> jnp.ndarray:
        return self.residues[:, index]


########################
# Converter
########################
def _reduce_lane(coefficients: np.ndarray, modulus: int) -> np.ndarray:
    return (coefficients % modulus).astype(np.uint64)


def to_residues(poly: Polynomial, base_set: RNSBaseSet, max_workers=None) -> ResidueRepresentation:
    """Split a polynomial into per-modulus residue lanes.

    Raises:
        CoefficientOverflow: If the combined modulus cannot represent the
            polynomial's coefficients (q > M, or max|c| too large when q is unset).
    """
    reduced = poly.reduce_mod_ring().reduce_mod_q()
    coefficients = reduced.coefficients

    if poly.modulus is not None:
        signed = False
        if poly.modulus > base_set.product:
            raise errors.CoefficientOverflow(
                f"coefficient modulus {poly.modulus} exceeds RNS modulus {base_set.product}")
    else:
        signed = reduced.has_negative_coefficients()
        bound = reduced.max_abs()
        if not base_set.covers(bound, signed):
            raise errors.CoefficientOverflow(
                f"coefficient magnitude {bound} does not fit RNS modulus {base_set.product}")

    # Lanes are independent, no ordering constraint between moduli
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        lanes = list(executor.map(lambda m: _reduce_lane(coefficients, m), base_set.moduli))

    residues = jnp.array(np.stack(lanes, axis=-1), dtype=jnp.uint64)
    return ResidueRepresentation(residues=residues, ring_degree=poly.ring_degree,
                                 modulus=poly.modulus, signed=signed)


def from_residues(representation: ResidueRepresentation, base_set: RNSBaseSet, signed=None) -> Polynomial:
    """Rebuild coefficients with CRT: sum_i ((r_i * c_i) mod m_i) * (M / m_i) mod M.

    Args:
        representation: Residue lanes matching base_set.
        base_set: The base the lanes were produced with.
        signed: Override representation.signed; a signed lift maps values above
            M/2 to value - M.
    """
    if representation.num_lanes != base_set.size:
        raise ValueError(
            f"representation has {representation.num_lanes} lanes, base has {base_set.size} moduli")
    if signed is None:
        signed = representation.signed

    # Step 1: y_i = r_i * c_i mod m_i, residues and constants are < 2^31 so the product fits u64
    residues = jnp.asarray(representation.residues, dtype=jnp.uint64)
    y = (residues * base_set.q_hat_inv_array) % base_set.moduli_array

    # Step 2: accumulate y_i * (M / m_i) with exact Python integers
    y_exact = np.asarray(y).astype(object)
    q_hat = np.array(base_set.q_hat, dtype=object)
    values = (y_exact * q_hat).sum(axis=-1) % base_set.product

    if signed:
        half = base_set.product // 2
        values = np.where(values > half, values - base_set.product, values)

    result = Polynomial(values, representation.ring_degree, representation.modulus)
    return result.reduce_mod_q()
