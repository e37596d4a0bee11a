"""Number theory helpers shared by the RNS, NTT and matrix conversion modules.

All helpers work on Python integers so they stay exact for moduli of any
width; callers convert to JAX arrays once the values are known to fit.
"""

from typing import List

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

# The first 13 primes make Miller-Rabin exact below 3.3 * 10^24
_MILLER_RABIN_BASES = (2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41)


####################################
# Bit Helpers
####################################
def is_power_of_two(x: int) -> bool:
  return x > 0 and (x & (x - 1)) == 0


def split_transform_length(n: int):
  """Split a power-of-two length n into (r, c) with r * c == n and r <= c."""
  if not is_power_of_two(n):
    raise ValueError(f"transform length {n} is not a power of two")
  log_n = n.bit_length() - 1
  r = 1 << (log_n // 2)
  return r, n // r


####################################
# Modular Arithmetic
####################################
def modinv(x: int, q: int) -> int:
  """Inverse of x modulo q.

  Raises:
    ValueError: If gcd(x, q) != 1.
  """
  try:
    return pow(int(x), -1, int(q))
  except ValueError as err:
    raise ValueError(f"{x} has no inverse modulo {q}") from err


def _distinct_prime_factors(n: int) -> List[int]:
  factors = []
  p = 2
  while p * p <= n:
    if n % p == 0:
      factors.append(p)
      while n % p == 0:
        n //= p
    p = 3 if p == 2 else p + 2
  if n > 1:
    factors.append(n)
  return factors


def find_generator(q: int) -> int:
  """Smallest generator of the multiplicative group of Z_q, q prime.

  Raises:
    ValueError: If no element generates the group (q is not prime).
  """
  order = q - 1
  cofactors = [order // p for p in _distinct_prime_factors(order)]
  for g in range(2, q):
    if all(pow(g, e, q) != 1 for e in cofactors):
      return g
  raise ValueError(f"Z_{q} has no generator, {q} is not prime")


def root_of_unity(m: int, q: int) -> int:
  """A primitive m-th root of unity modulo the prime q.

  Usage:
    psi = root_of_unity(2 * n, q)  # psi^n == -1 mod q

  Raises:
    ValueError: If m does not divide q - 1.
  """
  if (q - 1) % m != 0:
    raise ValueError(f"{m} does not divide {q} - 1")
  # g has order q - 1, so g^((q-1)/m) has order exactly m
  return pow(find_generator(q), (q - 1) // m, q)


def is_prime_deterministic(n: int) -> bool:
  """Trial division by the witness primes, then Miller-Rabin with the same set."""
  if n < 2:
    return False
  for p in _MILLER_RABIN_BASES:
    if n % p == 0:
      return n == p

  d, s = n - 1, 0
  while d % 2 == 0:
    d //= 2
    s += 1
  for a in _MILLER_RABIN_BASES:
    x = pow(a, d, n)
    if x == 1 or x == n - 1:
      continue
    for _ in range(s - 1):
      x = x * x % n
      if x == n - 1:
        break
    else:
      return False
  return True


####################################
# Modulus Generation
####################################
def find_moduli_ntt(total_number: int, precision: int, ntt_length: int) -> List[int]:
  """Largest primes p < 2^precision with p = 1 mod ntt_length.

  Args:
    total_number: How many primes to return.
    precision: Bit width bound, every prime is below 2^precision.
    ntt_length: Required divisor of p - 1 (2n for the negacyclic NTT of size n).

  Returns:
    Primes in decreasing order; fewer than total_number when the range runs out.
  """
  moduli = []
  candidate = ((2**precision - 2) // ntt_length) * ntt_length + 1
  while candidate > 1 and len(moduli) < total_number:
    if is_prime_deterministic(candidate):
      moduli.append(candidate)
    candidate -= ntt_length
  return moduli


def find_primes_below(total_number: int, precision: int) -> List[int]:
  """Largest total_number odd primes below 2^precision, in decreasing order."""
  return find_moduli_ntt(total_number, precision, 2)


def is_ntt_friendly(q, n) -> bool:
  """True when Z_q has a primitive 2n-th root of unity usable by the negacyclic NTT."""
  if q is None or not is_power_of_two(n):
    return False
  return (q - 1) % (2 * n) == 0 and is_prime_deterministic(q)


####################################
# Test Data
####################################
def random_coefficients(shape, bound, seed=0, dtype=jnp.uint32):
  """Uniform integers in [0, bound) for bounds that fit in int64."""
  key = jax.random.key(seed)
  values = jax.random.randint(key, shape=shape, minval=0, maxval=bound, dtype=jnp.int64)
  return values.astype(dtype)
