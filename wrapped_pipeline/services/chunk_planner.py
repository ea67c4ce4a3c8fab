from typing import List, Sequence, TypeVar

from ..config.settings import settings

T = TypeVar("T")


def split_transactions(transactions: Sequence[T],
                       max_size: int = settings.BATCH_SIZE) -> List[List[T]]:
    """Split transactions into ordered, contiguous batches of at most max_size.

    Produces ceil(len / max_size) batches; only the last one may be short,
    and empty input gives no batches at all.
    """
    if max_size < 1:
        raise ValueError(f"batch size must be positive, got {max_size}")
    return [
        list(transactions[start:start + max_size])
        for start in range(0, len(transactions), max_size)
    ]
