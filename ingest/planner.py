"""
Chunk planner: divide le righe dati di un file in intervalli contigui.

Righe foglio 1-based, estremi inclusi, riga 1 = header:
chunk i copre [i*chunk_size + 2, min((i+1)*chunk_size + 1, total_rows + 1)].
"""
import logging
import math
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkRange:
    chunk_number: int  # 1-based
    total_chunks: int
    start_row: int
    end_row: int
    is_first_chunk: bool = False
    open_ended: bool = False

    @property
    def row_count(self) -> int:
        return self.end_row - self.start_row + 1


def plan_chunks(total_rows: int, chunk_size: int = 2000, exact: bool = True) -> List[ChunkRange]:
    """
    Pianifica i chunk per total_rows righe dati.

    Con totale stimato (exact=False) l'ultimo chunk è open_ended: il worker
    legge fino a fine foglio invece di fermarsi a end_row.

    Raises:
        ValueError: Se total_rows < 0 o chunk_size < 1
    """
    if total_rows < 0:
        raise ValueError(f"total_rows must be >= 0, got {total_rows}")
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

    total_chunks = math.ceil(total_rows / chunk_size)
    chunks = []
    for i in range(total_chunks):
        chunks.append(ChunkRange(
            chunk_number=i + 1,
            total_chunks=total_chunks,
            start_row=i * chunk_size + 2,
            end_row=min((i + 1) * chunk_size + 1, total_rows + 1),
            is_first_chunk=(i == 0),
            open_ended=(not exact and i == total_chunks - 1),
        ))

    logger.info(
        f"[PLANNER] {total_rows} rows → {total_chunks} chunks of {chunk_size} "
        f"({'exact' if exact else 'estimated'} total)"
    )
    return chunks
