"""Success/failure values for checks that must not raise.

Health probes report a latency or an error message; callers branch on
``is_ok()`` instead of catching exceptions.
"""

from typing import TYPE_CHECKING, Generic, NoReturn, TypeVar

from attrs import frozen
from beartype import beartype

T = TypeVar("T")
E = TypeVar("E")

__all__ = ["Err", "Ok", "Result"]


@frozen
class Ok(Generic[T]):
    """A successful outcome carrying ``value``."""

    value: T

    @beartype
    def is_ok(self) -> bool:
        return True

    @beartype
    def is_err(self) -> bool:
        return False

    @property
    def ok_value(self) -> T:
        return self.value

    @property
    def err_value(self) -> None:
        return None

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value


@frozen
class Err(Generic[E]):
    """A failed outcome carrying ``error``."""

    error: E

    @beartype
    def is_ok(self) -> bool:
        return False

    @beartype
    def is_err(self) -> bool:
        return True

    @property
    def ok_value(self) -> None:
        return None

    @property
    def err_value(self) -> E:
        return self.error

    def unwrap(self) -> NoReturn:
        raise ValueError(f"Called unwrap on Err value: {self.error}")

    def unwrap_or(self, default: T) -> T:
        return default


if TYPE_CHECKING:
    Result = Ok[T] | Err[E]
else:

    class Result(Generic[T, E]):
        """Subscriptable at runtime so ``Result[float, str]`` annotations resolve."""

        def __class_getitem__(cls, params: object) -> object:
            return Ok | Err
