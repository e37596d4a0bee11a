"""
Negacyclic NTT multiplication in Z_q[x]/(x^n+1).

The transform of length n = r * c is evaluated with the three-step (matrix)
algorithm so that every heavy step is a matrix product:

    1. pre-twist         a_i *= psi^i                       (psi^n = -1)
    2. step1             Y = T1 @ X,      T1[k1, i1] = omega^(c*k1*i1)   (r x r)
    3. step2             Y *= T2,         T2[k1, i2] = omega^(k1*i2)     (r x c)
    4. step3             Z = Y @ T3,      T3[i2, k2] = omega^(r*i2*k2)   (c x c)

where X is the coefficient vector viewed as an (r, c) row-major matrix and
omega = psi^2. The evaluation at flat position (k1, k2) is the cyclic transform
at index k1 + r*k2. The inverse runs the steps backwards with inverse twiddles,
folding the 1/n scaling into the element-wise step.

For q < 2^31 the matrix steps use the Basis Aligned Transformation (BAT): the
twiddle matrix is expanded offline into bytes of (T * 2^(8a) mod q), so the
online product is a u8 x u8 einsum with u32 accumulation. Larger moduli run on
exact object-dtype NumPy arrays.
"""
import concurrent.futures
import functools

import jax
import jax.numpy as jnp
import numpy as np

import polymul_errors as errors
import polymul_util as util
from polynomial import Polynomial

jax.config.update("jax_enable_x64", True)

BAT_MODULUS_LIMIT = 2**31


########################
# Common Functions
########################
def matmul_bat_einsum(lhs: jax.Array, rhs: jax.Array, subscripts: str):
    """Basis Aligned Transformation (BAT) based matrix multiplication

    Args:
        lhs (jax.Array): u32 input, bitcast into 4 bytes on a trailing axis
        rhs (jax.Array): u8 twiddle factor matrix from basis_aligned_transformation
        subscripts (str): einsum subscripts

    Returns:
        jax.Array: u64 result, congruent to the matrix product modulo q
    """
    #preprocess
    lhs = jax.lax.bitcast_convert_type(lhs, new_dtype=jnp.uint8)
    shift_factors = jnp.array([0, 8, 16, 24], dtype=jnp.uint32)

    #computation
    i8_products = jnp.einsum(subscripts, lhs, rhs, preferred_element_type=jnp.uint32)
    return jnp.sum(i8_products.astype(jnp.uint64) << shift_factors, axis=(-1,))


def basis_aligned_transformation(matrix, modulus: int) -> jax.Array:
    """Expand a (rows, cols) matrix mod q into u8 of shape (rows, 4, cols, 4).

    Entry [i, a, j, p] is byte p of (matrix[i, j] * 2^(8a) mod q).
    """
    matrix_u64 = jnp.asarray(np.asarray(matrix).astype(np.uint64), dtype=jnp.uint64)
    q = jnp.uint64(modulus)
    matrix_u64_byteshifted = jnp.stack([(matrix_u64 << (8 * byte_idx)) % q for byte_idx in range(4)])
    # shape is (4, rows, cols, bytes=4)
    matrix_u8 = jax.lax.bitcast_convert_type(matrix_u64_byteshifted.astype(jnp.uint32), jnp.uint8)
    return matrix_u8.transpose(1, 0, 2, 3)


########################
# Parameter Generation Functions
########################
def gen_twiddle_matrix(rows, cols, q, omega, scale=1):
  """Precompute the twiddle matrix T of shape (rows, cols), where T[r, c] = scale * omega^(r*c) mod q.

  Args:
    rows: The number of rows in the matrix.
    cols: The number of columns in the matrix.
    q: The modulus.
    omega: The root of unity.
    scale: Constant folded into every entry.

  Returns:
    The twiddle matrix as exact Python integers.
  """
  twiddle_matrix = np.zeros((rows, cols), dtype=object)
  def compute_row(r):
    step = pow(int(omega), r, int(q))
    value = int(scale) % q
    for c in range(cols):
      twiddle_matrix[r, c] = value
      value = value * step % q

  with concurrent.futures.ThreadPoolExecutor() as executor:
    list(executor.map(compute_row, range(rows)))
  return twiddle_matrix


def check_ntt_modulus(modulus, ring_degree):
    """Raise NTTUnsupportedModulus unless Z_q has a primitive 2n-th root of unity."""
    if modulus is None:
        raise errors.NTTUnsupportedModulus("the NTT needs a coefficient modulus")
    if not util.is_power_of_two(ring_degree):
        raise errors.NTTUnsupportedModulus(f"ring degree {ring_degree} is not a power of two")
    if (modulus - 1) % (2 * ring_degree) != 0:
        raise errors.NTTUnsupportedModulus(f"{modulus} is not 1 mod {2 * ring_degree}")
    if not util.is_prime_deterministic(modulus):
        raise errors.NTTUnsupportedModulus(f"{modulus} is not prime")


def ntt_supported(modulus, ring_degree) -> bool:
    try:
        check_ntt_modulus(modulus, ring_degree)
    except errors.NTTUnsupportedModulus:
        return False
    return True


########################
# NTT Context
########################
class NTTContext():
    """
    Precomputed tables for the negacyclic NTT of one (q, n) pair.
    Read-only after construction, safe to share between threads.
    Args:
        modulus: q, prime with q = 1 mod 2n.
        ring_degree: n, a power of two.
        parameters: Optional "r" and "c" (r * c == n) and "use_bat".
    """
    def __init__(self, modulus: int, ring_degree: int, parameters: dict = None):
        check_ntt_modulus(modulus, ring_degree)
        parameters = parameters or {}
        self.moduli = int(modulus)
        self.ring_degree = int(ring_degree)
        default_r, default_c = util.split_transform_length(self.ring_degree)
        self.r = parameters.get("r", default_r)
        self.c = parameters.get("c", default_c)
        if self.r * self.c != self.ring_degree:
            raise ValueError(f"r * c must equal {self.ring_degree}, got {self.r} * {self.c}")
        self.use_bat = parameters.get("use_bat", self.moduli < BAT_MODULUS_LIMIT)
        if self.use_bat and self.moduli >= BAT_MODULUS_LIMIT:
            raise ValueError("BAT matrices need a modulus below 2^31")

        try:
            self.psi = util.root_of_unity(2 * self.ring_degree, self.moduli)
        except ValueError as err:
            raise errors.NTTUnsupportedModulus(str(err)) from err
        self.omega = (self.psi ** 2) % self.moduli

        q = self.moduli
        psi_inv = util.modinv(self.psi, q)
        self.psi_powers = np.array([pow(self.psi, i, q) for i in range(self.ring_degree)], dtype=object)
        self.psi_inv_powers = np.array([pow(psi_inv, i, q) for i in range(self.ring_degree)], dtype=object)

        self.ntt_tf_step1, self.ntt_tf_step2, self.ntt_tf_step3 = self.ntt_coefficients_precompute()
        self.intt_tf_step1, self.intt_tf_step2, self.intt_tf_step3 = self.intt_coefficients_precompute()

        if self.use_bat:
            self.ntt_bat_tf_step1 = basis_aligned_transformation(self.ntt_tf_step1, q)
            self.ntt_tf_step2_u64 = jnp.asarray(self.ntt_tf_step2.astype(np.uint64), dtype=jnp.uint64)
            self.ntt_bat_tf_step3 = basis_aligned_transformation(self.ntt_tf_step3, q)
            self.intt_bat_tf_step1 = basis_aligned_transformation(self.intt_tf_step1, q)
            self.intt_tf_step2_u64 = jnp.asarray(self.intt_tf_step2.astype(np.uint64), dtype=jnp.uint64)
            self.intt_bat_tf_step3 = basis_aligned_transformation(self.intt_tf_step3, q)
            self.psi_powers_u64 = jnp.asarray(self.psi_powers.astype(np.uint64), dtype=jnp.uint64)
            self.psi_inv_powers_u64 = jnp.asarray(self.psi_inv_powers.astype(np.uint64), dtype=jnp.uint64)

    ########################
    # Offline Functions
    ########################
    def ntt_coefficients_precompute(self):
        """
          - ntt_tf_step1: shape (R, R), omega^(c*k1*i1)
          - ntt_tf_step2: shape (R, C), omega^(k1*i2)
          - ntt_tf_step3: shape (C, C), omega^(r*i2*k2)
        """
        q = self.moduli
        omega_col = pow(self.omega, self.c, q)
        omega_row = pow(self.omega, self.r, q)
        tf_step1 = gen_twiddle_matrix(self.r, self.r, q, omega_col)
        tf_step2 = gen_twiddle_matrix(self.r, self.c, q, self.omega)
        tf_step3 = gen_twiddle_matrix(self.c, self.c, q, omega_row)
        return tf_step1, tf_step2, tf_step3

    def intt_coefficients_precompute(self):
        """
          - intt_tf_step1: shape (C, C), omega^(-r*k2*i2)
          - intt_tf_step2: shape (R, C), n^-1 * omega^(-k1*i2)
          - intt_tf_step3: shape (R, R), omega^(-c*i1*k1)
        """
        q = self.moduli
        inv_omega = util.modinv(self.omega, q)
        inv_omega_col = pow(inv_omega, self.c, q)
        inv_omega_row = pow(inv_omega, self.r, q)
        # Fold 1/n into step2 to merge the scaling with the element-wise twiddles
        n_inv = util.modinv(self.ring_degree, q)
        intt_tf_step1 = gen_twiddle_matrix(self.c, self.c, q, inv_omega_row)
        intt_tf_step2 = gen_twiddle_matrix(self.r, self.c, q, inv_omega, scale=n_inv)
        intt_tf_step3 = gen_twiddle_matrix(self.r, self.r, q, inv_omega_col)
        return intt_tf_step1, intt_tf_step2, intt_tf_step3

    ########################
    # Online Functions
    ########################
    def _ntt_bat(self, v: jax.Array) -> jax.Array:
        """v: u64 array of shape (B, R, C), already twisted."""
        q = jnp.uint64(self.moduli)
        result_step1 = matmul_bat_einsum(v.astype(jnp.uint32), self.ntt_bat_tf_step1, "brcq,zqrp->bzcp") % q
        result_step2 = (result_step1 * self.ntt_tf_step2_u64) % q
        result_step3 = matmul_bat_einsum(result_step2.astype(jnp.uint32), self.ntt_bat_tf_step3, "brcq,cqnp->brnp") % q
        return result_step3

    def _intt_bat(self, v: jax.Array) -> jax.Array:
        q = jnp.uint64(self.moduli)
        result_step1 = matmul_bat_einsum(v.astype(jnp.uint32), self.intt_bat_tf_step1, "brcq,cqnp->brnp") % q
        result_step2 = (result_step1 * self.intt_tf_step2_u64) % q
        result_step3 = matmul_bat_einsum(result_step2.astype(jnp.uint32), self.intt_bat_tf_step3, "brcq,zqrp->bzcp") % q
        return result_step3

    def _ntt_exact(self, v: np.ndarray) -> np.ndarray:
        """v: object array of shape (B, R, C), already twisted."""
        q = self.moduli
        result_step1 = np.matmul(self.ntt_tf_step1, v) % q
        result_step2 = (result_step1 * self.ntt_tf_step2) % q
        return np.matmul(result_step2, self.ntt_tf_step3) % q

    def _intt_exact(self, v: np.ndarray) -> np.ndarray:
        q = self.moduli
        result_step1 = np.matmul(v, self.intt_tf_step1) % q
        result_step2 = (result_step1 * self.intt_tf_step2) % q
        return np.matmul(self.intt_tf_step3, result_step2) % q

    def forward(self, coefficients):
        """Negacyclic NTT.

        Args:
            coefficients: Integers in [0, q), shape (n,) or (B, n).

        Returns:
            Evaluations with the same shape; u64 JAX array on the BAT path,
            object NumPy array otherwise.
        """
        batch_shape, flat = self._as_batch(coefficients)
        q = self.moduli
        if self.use_bat:
            v = jnp.asarray(flat.astype(np.uint64), dtype=jnp.uint64)
            v = (v * self.psi_powers_u64) % jnp.uint64(q)
            out = self._ntt_bat(v.reshape(-1, self.r, self.c))
        else:
            v = (flat * self.psi_powers) % q
            out = self._ntt_exact(v.reshape(-1, self.r, self.c))
        return out.reshape(batch_shape + (self.ring_degree,))

    def inverse(self, evaluations):
        """Inverse of forward, coefficients in [0, q)."""
        batch_shape, flat = self._as_batch(evaluations)
        q = self.moduli
        if self.use_bat:
            v = jnp.asarray(flat.astype(np.uint64), dtype=jnp.uint64)
            out = self._intt_bat(v.reshape(-1, self.r, self.c)).reshape(-1, self.ring_degree)
            out = (out * self.psi_inv_powers_u64) % jnp.uint64(q)
        else:
            out = self._intt_exact(flat.reshape(-1, self.r, self.c)).reshape(-1, self.ring_degree)
            out = (out * self.psi_inv_powers) % q
        return out.reshape(batch_shape + (self.ring_degree,))

    def _as_batch(self, values):
        values = np.asarray(values).astype(object)
        if values.shape[-1] != self.ring_degree:
            raise ValueError(f"expected trailing dimension {self.ring_degree}, got {values.shape}")
        batch_shape = values.shape[:-1]
        return batch_shape, values.reshape(-1, self.ring_degree) % self.moduli

    def multiply(self, a: Polynomial, b: Polynomial) -> Polynomial:
        """Pointwise product in the transform domain, both operands in one batch."""
        a.check_compatible(b)
        if a.modulus != self.moduli or a.ring_degree != self.ring_degree:
            raise ValueError("operands do not match this NTT context")
        stacked = np.stack([a.reduce_mod_ring().reduce_mod_q().coefficients,
                            b.reduce_mod_ring().reduce_mod_q().coefficients])
        evaluations = self.forward(stacked)
        if self.use_bat:
            product = (evaluations[0] * evaluations[1]) % jnp.uint64(self.moduli)
        else:
            product = (evaluations[0] * evaluations[1]) % self.moduli
        coefficients = self.inverse(product)
        return Polynomial(np.asarray(coefficients).astype(object), self.ring_degree, self.moduli)


@functools.lru_cache(maxsize=32)
def get_context(modulus: int, ring_degree: int) -> NTTContext:
    """Shared, cached context per (q, n)."""
    return NTTContext(modulus, ring_degree)


def ntt_multiply(a: Polynomial, b: Polynomial) -> Polynomial:
    """Multiply through the NTT.

    Raises:
        NTTUnsupportedModulus: If q is missing or has no primitive 2n-th root.
    """
    a.check_compatible(b)
    check_ntt_modulus(a.modulus, a.ring_degree)
    return get_context(a.modulus, a.ring_degree).multiply(a, b)
