from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from batchpoll.core.models.entry import JobKind, Region
from batchpoll.core.models.remote import DownloadedResult, RemoteStatusReport


class RemoteJobServicePort(ABC):
    """Submit / query-status / download operations of the remote batch service.

    Adapters raise RemoteServiceError for transport or upstream failures and
    return None from `submit` when the remote accepted the call but handed
    back no usable id.
    """

    @abstractmethod
    async def submit(
        self, kind: JobKind, region: Region, merchant_id: str, payload: str
    ) -> Optional[str]:
        """Submit one job; returns the remote id or None."""
        pass

    @abstractmethod
    async def query_status(
        self, kind: JobKind, region: Region, merchant_id: str, remote_ids: Sequence[str]
    ) -> List[RemoteStatusReport]:
        """Batched status lookup for the given remote ids."""
        pass

    @abstractmethod
    async def download(
        self, kind: JobKind, region: Region, merchant_id: str, result_id: str
    ) -> DownloadedResult:
        """Fetch the finished result content (and its digest when the remote sends one)."""
        pass
