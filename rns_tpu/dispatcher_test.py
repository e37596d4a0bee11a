import jax
import dispatcher
import mac_backend
import polymul_errors as errors
import polymul_util as util
from polynomial import Polynomial
from absl.testing import absltest
from absl.testing import parameterized
jax.config.update("jax_enable_x64", True)
import numpy as np
import jax.numpy as jnp

STRATEGIES = [
    ("direct", dispatcher.Strategy.DIRECT),
    ("ntt", dispatcher.Strategy.NTT),
    ("matrix_conversion", dispatcher.Strategy.MATRIX_CONVERSION),
]


def random_polynomial(n, q, seed):
  coefficients = np.asarray(util.random_coefficients((n,), q, seed=seed, dtype=jnp.int64))
  return Polynomial(coefficients, n, q)


class DispatcherTest(parameterized.TestCase):

  @parameterized.named_parameters(*STRATEGIES)
  def test_concrete_product(self, strategy):
    a = Polynomial([1, 2, 0, 0], 4, 17)
    b = Polynomial([0, 1, 0, 0], 4, 17)
    self.assertEqual(dispatcher.multiply(a, b, strategy).to_list(), [0, 1, 2, 0])

  @parameterized.named_parameters(*STRATEGIES)
  def test_strategies_agree(self, strategy):
    q = util.find_moduli_ntt(1, 30, 2 * 32)[0]
    a = random_polynomial(32, q, seed=21)
    b = random_polynomial(32, q, seed=22)
    expected = dispatcher.direct_multiply(a, b)
    backend = mac_backend.SoftwareMACBackend(tile_size=8)
    self.assertEqual(dispatcher.multiply(a, b, strategy, backend=backend), expected)

  @parameterized.named_parameters(*STRATEGIES)
  def test_identity(self, strategy):
    a = Polynomial([5, 0, 16, 3], 4, 17)
    self.assertEqual(dispatcher.multiply(a, Polynomial.one(4, 17), strategy), a)

  @parameterized.named_parameters(*STRATEGIES)
  def test_commutative(self, strategy):
    a = Polynomial([1, 7, 3, 12], 4, 17)
    b = Polynomial([9, 0, 4, 2], 4, 17)
    self.assertEqual(dispatcher.multiply(a, b, strategy), dispatcher.multiply(b, a, strategy))

  def test_strategy_by_name(self):
    a = Polynomial([1, 2, 0, 0], 4, 17)
    b = Polynomial([0, 1, 0, 0], 4, 17)
    self.assertEqual(dispatcher.multiply(a, b, "matrix_conversion").to_list(), [0, 1, 2, 0])
    with self.assertRaises(ValueError):
      dispatcher.multiply(a, b, "karatsuba")

  def test_unreduced_inputs(self):
    a = Polynomial([1, 0, 0, 0, 1, 2], 4, 17)
    b = Polynomial([0, 1, 0, 0], 4, 17)
    # a reduces to [0, -2, 0, 0]
    self.assertEqual(dispatcher.multiply(a, b).to_list(), [0, 0, 15, 0])

  def test_integer_ring_without_modulus(self):
    a = Polynomial([3, -5, 7, 0], 4)
    b = Polynomial([-2, 0, 1, 4], 4)
    self.assertEqual(dispatcher.multiply(a, b).to_list(), [7, -18, -11, 7])
    self.assertEqual(dispatcher.multiply(a, b, "matrix_conversion").to_list(), [7, -18, -11, 7])

  @parameterized.named_parameters(
      ("ntt_friendly", 4, 17, None, dispatcher.Strategy.NTT),
      ("no_modulus_small", 4, None, None, dispatcher.Strategy.DIRECT),
      ("no_backend", 128, 3, None, dispatcher.Strategy.DIRECT),
      ("backend_small_ring", 16, 3, "software", dispatcher.Strategy.DIRECT),
      ("backend_large_ring", 128, 3, "software", dispatcher.Strategy.MATRIX_CONVERSION),
      ("ntt_wins_over_backend", 128, 257, "software", dispatcher.Strategy.NTT),
  )
  def test_select_strategy(self, n, q, backend, expected):
    if backend is not None:
      backend = mac_backend.SoftwareMACBackend()
    selector = dispatcher.Dispatcher(backend)
    a = Polynomial([1], n, q)
    self.assertEqual(selector.select_strategy(a, a), expected)

  def test_reference_policy(self):
    selector = dispatcher.Dispatcher(mac_backend.SoftwareMACBackend(), {"policy": "reference"})
    a = Polynomial([1, 2], 4, 17)
    self.assertEqual(selector.select_strategy(a, a), dispatcher.Strategy.DIRECT)

  def test_threshold_is_configurable(self):
    selector = dispatcher.Dispatcher(mac_backend.SoftwareMACBackend(tile_size=4),
                                     {"matrix_threshold": 2, "tile_size": 4})
    a = Polynomial([1, 2, 3, 4], 4, 15)
    self.assertEqual(selector.select_strategy(a, a), dispatcher.Strategy.MATRIX_CONVERSION)
    self.assertEqual(selector.multiply(a, a), dispatcher.direct_multiply(a, a))

  def test_explicit_ntt_on_unsupported_modulus(self):
    a = Polynomial([1, 2, 3, 4], 4, 15)
    with self.assertRaises(errors.NTTUnsupportedModulus):
      dispatcher.multiply(a, a, dispatcher.Strategy.NTT)
    self.assertEqual(dispatcher.multiply(a, a).to_list(), dispatcher.direct_multiply(a, a).to_list())

  def test_mismatched_operands(self):
    with self.assertRaises(errors.DegreeMismatch):
      dispatcher.multiply(Polynomial([1], 4, 17), Polynomial([1], 8, 17))
    with self.assertRaises(errors.ModulusMismatch):
      dispatcher.multiply(Polynomial([1], 4, 17), Polynomial([1], 4, 97))

  def test_backend_failure_propagates(self):
    class BrokenBackend(mac_backend.SoftwareMACBackend):
      def mac(self, lhs, rhs, accumulator=None):
        raise RuntimeError("tile rejected")

    a = Polynomial([1, 2, 3, 4], 4, 17)
    with self.assertRaises(errors.BackendError):
      dispatcher.multiply(a, a, "matrix_conversion", backend=BrokenBackend(tile_size=4))


if __name__ == "__main__":
  absltest.main()
