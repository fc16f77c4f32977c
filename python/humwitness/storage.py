"""Persistence capability.

The pipeline needs simple keyed storage for fingerprints and peer reports.
Any engine can implement ``PersistenceProvider``; ``MemoryStore`` keeps
everything in process and is what tests and the CLI use.
"""

import logging
from typing import Dict, List, Optional

from .types import Fingerprint, PeerReport

logger = logging.getLogger(__name__)


class PersistenceProvider:
    """Keyed storage contract used by the coordinator and pipeline."""

    def save_fingerprint(self, media_item_id: str, fingerprint: Fingerprint) -> None:
        raise NotImplementedError

    def load_fingerprint(self, media_item_id: str) -> Optional[Fingerprint]:
        raise NotImplementedError

    def save_peer_report(self, report: PeerReport) -> None:
        raise NotImplementedError

    def list_peer_reports(self, media_item_id: str) -> List[PeerReport]:
        raise NotImplementedError


class MemoryStore(PersistenceProvider):
    """In-process ``PersistenceProvider``.

    Reports are kept per media item in arrival order; saving a report with
    an id already stored replaces it.
    """

    def __init__(self):
        self._fingerprints: Dict[str, Fingerprint] = {}
        self._reports: Dict[str, Dict[str, PeerReport]] = {}

    def save_fingerprint(self, media_item_id: str, fingerprint: Fingerprint) -> None:
        self._fingerprints[media_item_id] = fingerprint
        logger.debug(f"Stored fingerprint {fingerprint.hash[:12]} for {media_item_id}")

    def load_fingerprint(self, media_item_id: str) -> Optional[Fingerprint]:
        return self._fingerprints.get(media_item_id)

    def save_peer_report(self, report: PeerReport) -> None:
        self._reports.setdefault(report.media_item_id, {})[report.id] = report

    def list_peer_reports(self, media_item_id: str) -> List[PeerReport]:
        return list(self._reports.get(media_item_id, {}).values())
