"""
Matrix conversion: negacyclic multiplication as tiled narrow-lane MACs.

Multiplication by a in Z[x]/(x^n+1) is the linear map b -> A @ b with

    A[i, j] = a[(i - j) mod n]     if i >= j
    A[i, j] = -a[(i - j) mod n]    if i <  j     (x^n = -1 wraps with a sign)

The matrix path turns this into work a TPU/NPU MAC unit accepts:

    Polynomial -> RNS lanes (one per modulus m_k, each < 2^31)
               -> per lane: A mod m_k, digit decomposition of A and b in base B
               -> T x T tiles, one MAC per (row tile, column tile, digit of A)
               -> column sums per digit position, carry propagation, mod m_k
               -> CRT reconstruction (signed), reduction mod q

Every (lane, row tile, column tile, digit) task is independent; they are
fanned out on a thread pool and joined before recombination.
"""
import concurrent.futures
import itertools
from typing import Optional

import jax
import jax.numpy as jnp
import numpy as np
from absl import logging

import digit_decomposition
import mac_backend
import polymul_errors as errors
import rns
from polynomial import Polynomial

jax.config.update("jax_enable_x64", True)

DEFAULT_PARAMETERS = {
    "tile_size": mac_backend.DEFAULT_TILE_SIZE,
    "lane_bits": mac_backend.DEFAULT_LANE_BITS,
    "accumulator_bits": mac_backend.DEFAULT_ACCUMULATOR_BITS,
    # None lets digit_decomposition.choose_base derive it from the lane geometry
    "digit_base": None,
    "max_workers": None,
    "modulus_bits": rns.DEFAULT_MODULUS_BITS,
}


########################
# Matrix Form
########################
def negacyclic_indices(n: int):
    """Coefficient index (i - j) mod n and wrap mask (i < j) for every matrix entry."""
    rows = np.arange(n)[:, None]
    cols = np.arange(n)[None, :]
    return (rows - cols) % n, rows < cols


class MatrixForm():
    """The n x n negacyclic matrix of one polynomial, viewed as T x T tiles.

    Args:
        entries: (n, n) array, object dtype for exact integers.
        modulus: q when the entries are reduced mod q, else None.
        tile_size: T; the matrix is zero padded to a multiple of T.
    """
    def __init__(self, entries: np.ndarray, modulus: Optional[int], tile_size: int):
        if entries.ndim != 2 or entries.shape[0] != entries.shape[1]:
            raise ValueError(f"matrix must be square, got shape {entries.shape}")
        if tile_size < 1:
            raise ValueError(f"tile_size must be positive, got {tile_size}")
        self.entries = entries
        self.modulus = modulus
        self.tile_size = tile_size
        self.ring_degree = entries.shape[0]
        self.num_tiles = -(-self.ring_degree // tile_size)
        self._padded = None

    @property
    def padded_size(self) -> int:
        return self.num_tiles * self.tile_size

    def padded(self) -> np.ndarray:
        """Zero padded (N, N) matrix, built once and shared by every tile view."""
        if self._padded is None:
            size = self.padded_size
            out = np.zeros((size, size), dtype=self.entries.dtype)
            out[:self.ring_degree, :self.ring_degree] = self.entries
            self._padded = out
        return self._padded

    def tile(self, row_block: int, col_block: int) -> np.ndarray:
        t = self.tile_size
        return self.padded()[row_block * t:(row_block + 1) * t, col_block * t:(col_block + 1) * t]

    def tiles(self):
        """Yield (row_block, col_block, tile) over the padded grid."""
        padded = self.padded()
        t = self.tile_size
        for row_block, col_block in itertools.product(range(self.num_tiles), repeat=2):
            yield row_block, col_block, padded[row_block * t:(row_block + 1) * t,
                                               col_block * t:(col_block + 1) * t]

    def matvec(self, vector) -> np.ndarray:
        """Exact A @ vector, reduced mod q when the form carries a modulus."""
        vector = np.asarray(vector).astype(object)
        if vector.shape != (self.ring_degree,):
            raise ValueError(f"vector must have shape ({self.ring_degree},), got {vector.shape}")
        product = np.matmul(self.entries.astype(object), vector)
        if self.modulus is not None:
            product = product % self.modulus
        return product


def build_matrix(poly: Polynomial, tile_size: int = mac_backend.DEFAULT_TILE_SIZE) -> MatrixForm:
    """Negacyclic matrix of poly; entries stay in [0, q) when q is set."""
    reduced = poly.reduce_mod_ring().reduce_mod_q()
    index, wrapped = negacyclic_indices(poly.ring_degree)
    entries = reduced.coefficients[index]
    entries = np.where(wrapped, -entries, entries)
    if poly.modulus is not None:
        entries = entries % poly.modulus
    return MatrixForm(entries, poly.modulus, tile_size)


def build_lane_matrix(lane, modulus: int) -> np.ndarray:
    """Negacyclic matrix of one residue lane, u64 entries in [0, modulus)."""
    lane = np.asarray(lane, dtype=np.uint64)
    index, wrapped = negacyclic_indices(lane.shape[0])
    entries = lane[index]
    return np.where(wrapped, (np.uint64(modulus) - entries) % np.uint64(modulus), entries)


########################
# Matrix Converter
########################
class MatrixConverter():
    """Drives the RNS + digit + tiled MAC multiplication.

    Args:
        parameters: Overrides of DEFAULT_PARAMETERS. tile_size, lane_bits and
            accumulator_bits describe the software MAC used when no backend is
            given; a configured backend imposes its own geometry.
    """
    def __init__(self, parameters: dict = None):
        params = dict(DEFAULT_PARAMETERS)
        params.update(parameters or {})
        self.parameters = params
        self.tile_size = params.get("tile_size")
        self.lane_bits = params.get("lane_bits")
        self.accumulator_bits = params.get("accumulator_bits")
        self.digit_base = params.get("digit_base")
        self.max_workers = params.get("max_workers")
        self.modulus_bits = params.get("modulus_bits")
        # Raises ValueError for an impossible lane geometry
        self.software_backend = mac_backend.SoftwareMACBackend(
            self.tile_size, self.lane_bits, self.accumulator_bits)
        self.decomposer_for(self.software_backend)

    def resolve_backend(self, backend=None) -> mac_backend.MACBackendBase:
        """The backend to drive: the given one, or software when absent or unavailable."""
        if backend is None:
            return self.software_backend
        try:
            backend.ensure_available()
        except errors.BackendUnavailable as err:
            logging.warning("MAC backend %r unavailable (%s), using the software MAC path", backend, err)
            return backend.software_equivalent()
        return backend

    def decomposer_for(self, backend) -> digit_decomposition.DigitDecomposer:
        return digit_decomposition.DigitDecomposer(
            base=self.digit_base,
            lane_bits=backend.lane_bits,
            accumulator_bits=backend.accumulator_bits,
            accumulation_count=backend.tile_size)

    @staticmethod
    def product_bound(a: Polynomial, b: Polynomial) -> int:
        """Largest |coefficient| of a*b over Z, and of either operand."""
        n = a.ring_degree
        if a.modulus is not None:
            return max(n * (a.modulus - 1) ** 2, a.modulus)
        max_a, max_b = a.max_abs(), b.max_abs()
        return max(n * max_a * max_b, max_a, max_b)

    def base_for(self, a: Polynomial, b: Polynomial, base_set: Optional[rns.RNSBaseSet] = None) -> rns.RNSBaseSet:
        bound = self.product_bound(a, b)
        if base_set is None:
            return rns.RNSBaseSet.for_bound(bound, signed=True, bit_width=self.modulus_bits)
        if not base_set.covers(bound, signed=True):
            raise errors.CoefficientOverflow(
                f"RNS modulus {base_set.product} cannot hold products bounded by {bound}")
        return base_set

    ########################
    # Online Functions
    ########################
    def multiply_via_matrix(self, a: Polynomial, b: Polynomial, backend=None,
                            base_set: Optional[rns.RNSBaseSet] = None) -> Polynomial:
        """a * b mod (x^n + 1) (mod q) through tiled MAC calls.

        Raises:
            DegreeMismatch, ModulusMismatch: If a and b live in different rings.
            CoefficientOverflow: If base_set is too small for the product.
            BackendError: If a MAC call fails.
        """
        a.check_compatible(b)
        n = a.ring_degree
        base_set = self.base_for(a, b, base_set)
        unit = self.resolve_backend(backend)
        decomposer = self.decomposer_for(unit)

        residues_a = rns.to_residues(a, base_set, self.max_workers)
        residues_b = rns.to_residues(b, base_set, self.max_workers)
        lane_inputs = []
        for lane_index, modulus in enumerate(base_set.moduli):
            matrix = build_lane_matrix(residues_a.lane(lane_index), modulus)
            vector = np.asarray(residues_b.lane(lane_index), dtype=np.uint64)
            lane_inputs.append(self._decompose_lane(matrix, vector, modulus, unit.tile_size, decomposer))

        partials = self._fan_out(unit, lane_inputs)

        lanes = []
        for lane_index, modulus in enumerate(base_set.moduli):
            lane_partials = {key[1:]: value for key, value in partials.items() if key[0] == lane_index}
            lanes.append(self._recombine(lane_partials, lane_inputs[lane_index], modulus, n, decomposer))

        product = rns.ResidueRepresentation(
            residues=jnp.asarray(np.stack(lanes, axis=-1), dtype=jnp.uint64),
            ring_degree=n, modulus=None, signed=True)
        result = rns.from_residues(product, base_set)
        if a.modulus is None:
            return result
        return Polynomial(result.coefficients, n, a.modulus).reduce_mod_q()

    def _decompose_lane(self, matrix, vector, modulus, tile_size, decomposer):
        n = vector.shape[0]
        form = MatrixForm(matrix, modulus, tile_size)
        padded_size = form.padded_size
        num_digits = decomposer.num_digits(modulus - 1)
        padded_vector = np.zeros(padded_size, dtype=np.uint64)
        padded_vector[:n] = vector
        return {
            "matrix_digits": np.asarray(decomposer.decompose_array(form.padded(), num_digits)),
            "vector_digits": np.asarray(decomposer.decompose_array(padded_vector, num_digits)),
            "num_tiles": form.num_tiles,
            "num_digits": num_digits,
            "tile_size": tile_size,
        }

    def _fan_out(self, unit, lane_inputs):
        """Issue every MAC call, join, and return {(lane, row, col, digit): (T, D) u64}."""
        tasks = {}
        for lane_index, lane in enumerate(lane_inputs):
            t = lane["tile_size"]
            for row_block, col_block, digit in itertools.product(
                    range(lane["num_tiles"]), range(lane["num_tiles"]), range(lane["num_digits"])):
                lhs = np.ascontiguousarray(
                    lane["matrix_digits"][row_block * t:(row_block + 1) * t, col_block * t:(col_block + 1) * t, digit])
                rhs = np.ascontiguousarray(lane["vector_digits"][col_block * t:(col_block + 1) * t, :])
                tasks[(lane_index, row_block, col_block, digit)] = (lhs, rhs)
        logging.vlog(1, "Dispatching %d MAC tiles to %r", len(tasks), unit)

        partials = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(_call_mac, unit, lhs, rhs): key for key, (lhs, rhs) in tasks.items()}
            done, not_done = concurrent.futures.wait(futures, return_when=concurrent.futures.FIRST_EXCEPTION)
            for future in not_done:
                future.cancel()
            for future in done:
                partials[futures[future]] = future.result()
        return partials

    def _recombine(self, lane_partials, lane, modulus, n, decomposer) -> np.ndarray:
        """Weight partial accumulators by base^(i+j), propagate carries, reduce mod modulus."""
        t = lane["tile_size"]
        num_tiles = lane["num_tiles"]
        num_digits = lane["num_digits"]
        base = decomposer.base
        padded_size = num_tiles * t

        # column_sums[s] = sum over tiles of partial products with digit position i + j == s
        column_sums = np.zeros((2 * num_digits - 1, padded_size), dtype=np.uint64)
        for (row_block, _, digit), partial in lane_partials.items():
            rows = slice(row_block * t, (row_block + 1) * t)
            for other_digit in range(num_digits):
                column_sums[digit + other_digit, rows] += partial[:, other_digit]

        # Long-multiplication carry propagation over enough positions for n * (m - 1)^2
        num_positions = max(2 * num_digits - 1, decomposer.num_digits(n * (modulus - 1) ** 2))
        base_u64 = np.uint64(base)
        carry = np.zeros(padded_size, dtype=np.uint64)
        digits = []
        for position in range(num_positions):
            total = carry + (column_sums[position] if position < column_sums.shape[0] else 0)
            digits.append(total % base_u64)
            carry = total // base_u64
        if carry.any():
            raise errors.CoefficientOverflow("carry left over after digit recombination")

        # sum_s digit_s * (base^s mod m), each term below 2^47
        modulus_u64 = np.uint64(modulus)
        result = np.zeros(padded_size, dtype=np.uint64)
        for position, digit_row in enumerate(digits):
            weight = np.uint64(pow(base, position, modulus))
            result = (result + digit_row * weight) % modulus_u64
        return result[:n]


def _call_mac(unit, lhs, rhs) -> np.ndarray:
    # rhs blocks are at most tile_size wide
    t = unit.tile_size
    try:
        blocks = [np.asarray(unit.mac(lhs, np.ascontiguousarray(rhs[:, start:start + t])), dtype=np.uint64)
                  for start in range(0, rhs.shape[1], t)]
        return np.concatenate(blocks, axis=1)
    except errors.BackendError:
        raise
    except Exception as err:
        raise errors.BackendError(f"MAC call on {unit!r} failed: {err}") from err


def multiply_via_matrix(a: Polynomial, b: Polynomial, backend=None,
                        base_set: Optional[rns.RNSBaseSet] = None,
                        parameters: dict = None) -> Polynomial:
    return MatrixConverter(parameters).multiply_via_matrix(a, b, backend, base_set)
