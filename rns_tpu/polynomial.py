"""
Polynomial: elements of Z[x]/(x^n+1) or Z_q[x]/(x^n+1).

Coefficients are stored lowest degree first in a NumPy object array so that
they stay exact Python integers of any width. Multiplication lives in
dispatcher.multiply, which picks the strategy (direct, NTT or matrix
conversion).
"""
import numpy as np

import polymul_errors as errors


def _as_object_array(values) -> np.ndarray:
    """Copy an integer sequence into a 1-D object array of Python ints."""
    array = np.asarray(values)
    if array.size == 0:
        return np.zeros(0, dtype=object)
    if array.ndim == 0:
        array = array.reshape(1)
    if array.ndim != 1:
        raise ValueError(f"coefficients must be one dimensional, got shape {array.shape}")
    if array.dtype.kind in ("f", "c"):
        raise TypeError("coefficients must be integers")
    out = np.empty(array.shape[0], dtype=object)
    out[:] = [int(v) for v in array.tolist()]
    return out


class Polynomial():
    """A polynomial in the negacyclic ring x^n + 1.

    Args:
        coefficients: Integer coefficients, index i holds the coefficient of x^i.
            Shorter inputs are zero padded to n; longer inputs are kept raw until
            reduce_mod_ring() folds them.
        ring_degree: n, the ring is defined by x^n = -1.
        modulus: Optional coefficient modulus q.
    """
    def __init__(self, coefficients, ring_degree: int, modulus=None):
        if ring_degree < 1:
            raise ValueError(f"ring_degree must be positive, got {ring_degree}")
        if modulus is not None and modulus < 2:
            raise ValueError(f"modulus must be at least 2, got {modulus}")
        self.ring_degree = int(ring_degree)
        self.modulus = None if modulus is None else int(modulus)

        coeffs = _as_object_array(coefficients)
        if coeffs.shape[0] < self.ring_degree:
            padded = np.zeros(self.ring_degree, dtype=object)
            padded[:coeffs.shape[0]] = coeffs
            coeffs = padded
        self.coefficients = coeffs

    @classmethod
    def zero(cls, ring_degree, modulus=None):
        return cls([], ring_degree, modulus)

    @classmethod
    def one(cls, ring_degree, modulus=None):
        """The multiplicative identity."""
        return cls([1], ring_degree, modulus)

    ########################
    # Queries
    ########################
    def __len__(self):
        return self.coefficients.shape[0]

    def __repr__(self):
        return (f"Polynomial({self.to_list()}, ring_degree={self.ring_degree}, "
                f"modulus={self.modulus})")

    def __eq__(self, other):
        if not isinstance(other, Polynomial):
            return NotImplemented
        if self.ring_degree != other.ring_degree or self.modulus != other.modulus:
            return False
        return self._reduced().to_list() == other._reduced().to_list()

    __hash__ = None

    def to_list(self):
        return [int(c) for c in self.coefficients]

    def copy(self):
        return Polynomial(self.coefficients.copy(), self.ring_degree, self.modulus)

    def is_reduced(self) -> bool:
        """Length n and, when q is set, every coefficient in [0, q)."""
        if len(self) != self.ring_degree:
            return False
        if self.modulus is None:
            return True
        return all(0 <= c < self.modulus for c in self.coefficients)

    def degree(self) -> int:
        """Index of the highest non-zero coefficient after reduction, -1 for zero."""
        nonzero = np.flatnonzero(self._reduced().coefficients != 0)
        return int(nonzero[-1]) if nonzero.size else -1

    def max_abs(self) -> int:
        """Largest coefficient magnitude of the ring-reduced polynomial."""
        coeffs = self._reduced().coefficients
        return max((abs(int(c)) for c in coeffs), default=0)

    def has_negative_coefficients(self) -> bool:
        return any(c < 0 for c in self.coefficients)

    def centered(self):
        """Coefficients mapped to (-q/2, q/2]; unchanged when q is unset."""
        reduced = self._reduced()
        if self.modulus is None:
            return reduced.to_list()
        half = self.modulus // 2
        return [c - self.modulus if c > half else c for c in reduced.to_list()]

    ########################
    # Reductions
    ########################
    def reduce_mod_ring(self):
        """Fold coefficients of degree >= n back using x^n = -1."""
        n = self.ring_degree
        num_blocks = -(-len(self) // n)
        padded = np.zeros(num_blocks * n, dtype=object)
        padded[:len(self)] = self.coefficients
        blocks = padded.reshape(num_blocks, n)
        # Block b holds x^(b*n + i) = (-1)^b * x^i
        signs = np.array([1 if b % 2 == 0 else -1 for b in range(num_blocks)], dtype=object)
        folded = (blocks * signs[:, None]).sum(axis=0)
        return Polynomial(folded, n, self.modulus)

    def reduce_mod_q(self):
        """Map every coefficient into [0, q); a copy when q is unset."""
        if self.modulus is None:
            return self.copy()
        return Polynomial(self.coefficients % self.modulus, self.ring_degree, self.modulus)

    def _reduced(self):
        return self.reduce_mod_ring().reduce_mod_q()

    ########################
    # Arithmetic
    ########################
    def check_compatible(self, other):
        """Raise unless other lives in the same ring."""
        if not isinstance(other, Polynomial):
            raise TypeError(f"expected a Polynomial, got {type(other).__name__}")
        if self.ring_degree != other.ring_degree:
            raise errors.DegreeMismatch(
                f"ring degrees differ: {self.ring_degree} != {other.ring_degree}")
        if self.modulus != other.modulus:
            raise errors.ModulusMismatch(
                f"coefficient moduli differ: {self.modulus} != {other.modulus}")

    def add(self, other):
        self.check_compatible(other)
        total = self.reduce_mod_ring().coefficients + other.reduce_mod_ring().coefficients
        return Polynomial(total, self.ring_degree, self.modulus).reduce_mod_q()

    def add_assign(self, other):
        """In-place add; self must be exclusively owned by the caller."""
        self.coefficients = self.add(other).coefficients
        return self

    def negate(self):
        return Polynomial(-self.reduce_mod_ring().coefficients, self.ring_degree,
                          self.modulus).reduce_mod_q()

    def sub(self, other):
        self.check_compatible(other)
        return self.add(other.negate())

    def scalar_mul(self, scalar: int):
        scaled = self.reduce_mod_ring().coefficients * int(scalar)
        return Polynomial(scaled, self.ring_degree, self.modulus).reduce_mod_q()

    def scalar_mul_assign(self, scalar: int):
        self.coefficients = self.scalar_mul(scalar).coefficients
        return self

    __add__ = add
    __sub__ = sub
    __neg__ = negate


def add(a: Polynomial, b: Polynomial) -> Polynomial:
    return a.add(b)


def add_assign(a: Polynomial, b: Polynomial) -> Polynomial:
    return a.add_assign(b)


def scalar_mul(a: Polynomial, scalar: int) -> Polynomial:
    return a.scalar_mul(scalar)


def reduce_mod_ring(a: Polynomial) -> Polynomial:
    return a.reduce_mod_ring()


def reduce_mod_q(a: Polynomial) -> Polynomial:
    return a.reduce_mod_q()
