"""Failure kinds raised by the polynomial multiplication stack.

Every multiplication entry point either returns a correct Polynomial or raises
exactly one of these. Each kind also derives from the closest builtin so that
callers catching ValueError / OverflowError / RuntimeError keep working.
"""


class PolynomialArithmeticError(Exception):
  """Base class for all failures of this package."""


class DegreeMismatch(PolynomialArithmeticError, ValueError):
  """Operands live in rings x^n+1 with different n."""


class ModulusMismatch(PolynomialArithmeticError, ValueError):
  """Operands carry different coefficient moduli."""


class ModulusNotCoprime(PolynomialArithmeticError, ValueError):
  """Two moduli of an RNS base share a common factor."""


class NonInvertibleModulus(PolynomialArithmeticError, ValueError):
  """A CRT constant (M/m_i)^-1 mod m_i does not exist."""


class CoefficientOverflow(PolynomialArithmeticError, OverflowError):
  """A value does not fit the RNS combined modulus or the digit width."""


class NTTUnsupportedModulus(PolynomialArithmeticError, ValueError):
  """The modulus has no primitive 2n-th root of unity."""


class BackendUnavailable(PolynomialArithmeticError, RuntimeError):
  """The MAC backend cannot be used; callers fall back to software."""


class BackendError(PolynomialArithmeticError, RuntimeError):
  """A MAC call failed on an available backend."""
