from typing import Sequence, TypeVar, Union

T = TypeVar("T")


def normalize_array(value: Union[T, Sequence[T]]) -> list[T]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def chunks(items: Sequence[T], size: int) -> list[list[T]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
