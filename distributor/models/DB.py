import datetime
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from tinydb import TinyDB

from distributor.errors import StateLockedError
from distributor.models.Batch import Batch, SubmissionOutcome
from distributor.models.State import DistributionState

logger = logging.getLogger(__name__)

STATE_DOC_ID = 1


class StateStore(TinyDB):
    """
    The distribution checkpoint on disk.

    Two tables: `state` holds the single DistributionState document, `batches`
    is an append-only log of every submission attempt. Only the reconciler and
    the batch engine write to it, and only while holding `lock()`.
    """

    path: str

    def __init__(self, path: str, **kwargs):
        self.path = path
        # tinydb can't create a directory for a bare filename
        create_dirs = bool(os.path.dirname(path))
        super().__init__(path, indent=4, create_dirs=create_dirs, **kwargs)

    @staticmethod
    def exists(path: str) -> bool:
        return os.path.exists(path)

    @property
    def lock_path(self) -> str:
        return f"{self.path}.lock"

    def load(self) -> Optional[DistributionState]:
        doc = self.table("state").get(doc_id=STATE_DOC_ID)
        if doc is None:
            return None
        return DistributionState.model_validate(dict(doc))

    def save(self, state: DistributionState) -> None:
        table = self.table("state")
        data = state.model_dump()
        if table.contains(doc_id=STATE_DOC_ID):
            table.update(data, doc_ids=[STATE_DOC_ID])
        else:
            table.insert(data)

    def record_batch(self, batch: Batch, outcome: SubmissionOutcome) -> None:
        self.table("batches").insert(
            {
                "at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                "cursor": batch.cursor,
                "recipients": batch.recipients,
                "amounts": [str(a) for a in batch.amounts],
                "total": str(batch.total),
                "outcome": outcome.model_dump(),
            }
        )

    def history(self) -> list[dict]:
        return [dict(d) for d in self.table("batches").all()]

    @contextmanager
    def lock(self) -> Iterator["StateStore"]:
        """
        Advisory exclusive lock on the state file. A lock file left behind by a
        crashed run has to be removed by hand once nothing else is running.
        """
        Path(self.lock_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise StateLockedError(
                f"{self.path} is locked by another run (remove {self.lock_path} if it is stale)"
            )
        try:
            os.write(fd, str(os.getpid()).encode())
            os.close(fd)
            logger.debug("acquired %s", self.lock_path)
            yield self
        finally:
            os.remove(self.lock_path)
            logger.debug("released %s", self.lock_path)
