import polymul_errors as errors
import polynomial
from polynomial import Polynomial
from absl.testing import absltest
from absl.testing import parameterized
import numpy as np


class PolynomialTest(parameterized.TestCase):

  def test_short_input_is_zero_padded(self):
    poly = Polynomial([1, 2], 4)
    self.assertEqual(poly.to_list(), [1, 2, 0, 0])
    self.assertTrue(poly.is_reduced())

  @parameterized.named_parameters(
      ("integer_ring", None),
      ("mod_q", 17),
  )
  def test_empty_input_is_zero(self, q):
    self.assertEqual(Polynomial([], 4, q).to_list(), [0, 0, 0, 0])
    self.assertEqual(Polynomial.zero(4, q).to_list(), [0, 0, 0, 0])
    self.assertEqual(Polynomial.zero(4, q).degree(), -1)
    self.assertTrue(Polynomial.zero(4, q).is_reduced())

  def test_invalid_construction(self):
    with self.assertRaises(ValueError):
      Polynomial([1], 0)
    with self.assertRaises(ValueError):
      Polynomial([1], 4, modulus=1)
    with self.assertRaises(TypeError):
      Polynomial([1.5, 2.0], 4)

  @parameterized.named_parameters(
      # x^4 = -1, so 1 + x^4 = 0 and x^5 = -x
      ("one_block", [1, 0, 0, 0, 1], 4, None, [0, 0, 0, 0]),
      ("shifted", [0, 0, 0, 0, 0, 3], 4, None, [0, -3, 0, 0]),
      ("two_blocks", [1, 0, 0, 0, 0, 0, 0, 0, 1], 4, None, [2, 0, 0, 0]),
      ("mod_q", [1, 0, 0, 0, 0, 3], 4, 17, [1, 14, 0, 0]),
  )
  def test_reduce_mod_ring(self, coefficients, n, q, expected):
    reduced = Polynomial(coefficients, n, q).reduce_mod_ring().reduce_mod_q()
    self.assertEqual(reduced.to_list(), expected)

  def test_reduction_is_idempotent(self):
    poly = Polynomial([5, -7, 3, 20, 11, -2, 9], 4, 13)
    once = poly.reduce_mod_ring().reduce_mod_q()
    twice = once.reduce_mod_ring().reduce_mod_q()
    self.assertEqual(once.to_list(), twice.to_list())
    self.assertTrue(once.is_reduced())
    self.assertFalse(poly.is_reduced())

  def test_reduce_mod_q_keeps_wide_coefficients(self):
    big = 2**200 + 5
    poly = Polynomial([big, -1], 2, 2**127 - 1)
    self.assertEqual(poly.reduce_mod_q().to_list(), [big % (2**127 - 1), 2**127 - 2])

  def test_equality_compares_reduced_forms(self):
    self.assertEqual(Polynomial([18, -1], 2, 17), Polynomial([1, 16], 2, 17))
    self.assertNotEqual(Polynomial([1, 0], 2, 17), Polynomial([1, 0], 2, 19))
    self.assertNotEqual(Polynomial([1, 0], 2), Polynomial([1, 0], 4))

  def test_add_sub_negate(self):
    a = Polynomial([1, 16, 5, 0], 4, 17)
    b = Polynomial([16, 1, 13, 2], 4, 17)
    self.assertEqual(polynomial.add(a, b).to_list(), [0, 0, 1, 2])
    self.assertEqual((a - b).to_list(), [2, 15, 9, 15])
    self.assertEqual((-a).to_list(), [16, 1, 12, 0])
    self.assertEqual((a + (-a)), Polynomial.zero(4, 17))

  def test_add_assign_updates_in_place(self):
    a = Polynomial([1, 2, 3, 4], 4)
    result = polynomial.add_assign(a, Polynomial([1, 1, 1, 1], 4))
    self.assertIs(result, a)
    self.assertEqual(a.to_list(), [2, 3, 4, 5])

  def test_scalar_mul(self):
    a = Polynomial([1, 2, 3, 4], 4, 17)
    self.assertEqual(polynomial.scalar_mul(a, 5).to_list(), [5, 10, 15, 3])
    a.scalar_mul_assign(-1)
    self.assertEqual(a.to_list(), [16, 15, 14, 13])

  def test_mismatched_rings(self):
    with self.assertRaises(errors.DegreeMismatch):
      Polynomial([1], 4).add(Polynomial([1], 8))
    with self.assertRaises(errors.ModulusMismatch):
      Polynomial([1], 4, 17).add(Polynomial([1], 4, 19))
    with self.assertRaises(TypeError):
      Polynomial([1], 4).add([1, 0, 0, 0])

  def test_errors_share_base_class(self):
    self.assertTrue(issubclass(errors.DegreeMismatch, errors.PolynomialArithmeticError))
    self.assertTrue(issubclass(errors.DegreeMismatch, ValueError))

  def test_queries(self):
    poly = Polynomial([3, 0, 15, 0], 4, 17)
    self.assertEqual(poly.degree(), 2)
    self.assertEqual(poly.max_abs(), 15)
    self.assertEqual(poly.centered(), [3, 0, -2, 0])
    self.assertEqual(Polynomial.zero(4).degree(), -1)
    self.assertEqual(Polynomial.one(4, 17).to_list(), [1, 0, 0, 0])
    np.testing.assert_array_equal(poly.copy().coefficients, poly.coefficients)


if __name__ == "__main__":
  absltest.main()
