from typing import Optional

from pydantic import BaseModel


class ScanWindow(BaseModel):
    """A block range that was fetched successfully"""

    fromBlock: int
    toBlock: int
    span: int
    events: int = 0


class ScanGap(BaseModel):
    """A block range that was given up on after repeated errors"""

    fromBlock: int
    toBlock: int
    error: str


class ScanResult(BaseModel):
    """
    :param `windows`: successful windows in block order
    :param `gaps`: ranges that were skipped; together with `windows` they tile the range
    :param `cancelled`: stopped early by the caller, the tail of the range was not scanned
    """

    fromBlock: int
    toBlock: int
    windows: list[ScanWindow] = []
    gaps: list[ScanGap] = []
    events: int = 0
    finalSpan: Optional[int] = None
    cancelled: bool = False

    @property
    def complete(self) -> bool:
        return not self.gaps and not self.cancelled
