"""
Comparison Coordinator - collects signed peer reports for a fingerprint.

Requester side: fan a comparison request out to every live peer at once,
connecting first where needed. Each peer has its own deadline and its own
failure handling; the call returns whatever reports arrived.

Responder side: compare the requester's fingerprint with the local one
for the same media item and answer with a signed report. Without a local
fingerprint the answer is a zero-similarity report.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from .compare import FingerprintComparator
from .confidence import PeerReportValidator
from .crypto import CryptoUtils
from .errors import MalformedMessageError, PeerConnectionError, PeerTimeoutError
from .messages import (
    FingerprintRequest,
    FingerprintResponse,
    build_signed_report,
    proximity_level_for,
)
from .storage import MemoryStore, PersistenceProvider
from .transport import MeshTransport
from .types import Fingerprint, MeshPeer, PeerReport, ProximityLevel, fingerprint_digest

logger = logging.getLogger(__name__)

FingerprintLookup = Callable[[FingerprintRequest], Optional[Fingerprint]]


class ComparisonCoordinator:
    """Requester and responder sides of peer fingerprint comparison."""

    def __init__(
        self,
        transport: MeshTransport,
        store: Optional[PersistenceProvider] = None,
        comparator: Optional[FingerprintComparator] = None,
        validator: Optional[PeerReportValidator] = None,
        request_timeout: Optional[float] = None,
        lookup: Optional[FingerprintLookup] = None,
    ):
        """Initialize the coordinator and register it as the responder.

        Args:
            transport: Mesh transport used to reach peers
            store: Where fingerprints and reports are kept
            comparator: Fingerprint comparator for the responder side
            validator: Structural report checks for the requester side
            request_timeout: Per-peer deadline in seconds (defaults to the
                transport's ``request_timeout``)
            lookup: Finds the local fingerprint for a request (defaults to
                ``store.load_fingerprint(media_item_id)``)
        """
        self.transport = transport
        self.store = store or MemoryStore()
        self.comparator = comparator or FingerprintComparator()
        self.validator = validator or PeerReportValidator()
        self.request_timeout = (
            transport.config.request_timeout if request_timeout is None else request_timeout
        )
        self.lookup = lookup or (lambda request: self.store.load_fingerprint(request.media_item_id))
        transport.set_request_handler(self.handle_fingerprint_request)

    # ------------------------------------------------------------------
    # Requester
    # ------------------------------------------------------------------
    async def request_comparisons(
        self,
        fingerprint: Fingerprint,
        media_item_id: Optional[str] = None,
    ) -> List[PeerReport]:
        """
        Ask every live peer to compare ``fingerprint`` with its own.

        Args:
            fingerprint: Local fingerprint of the recording
            media_item_id: Media item id (defaults to the fingerprint hash)

        Returns:
            Reports that arrived in time and passed validation, in no
            particular order
        """
        media_item_id = media_item_id or fingerprint.hash
        peers = self.transport.get_live_peers()
        if not peers:
            logger.warning("No live peers to request comparisons from")
            return []

        logger.info(f"Requesting comparisons from {len(peers)} peers for {media_item_id}")
        results = await asyncio.gather(
            *[self._request_from_peer(peer, fingerprint, media_item_id) for peer in peers],
            return_exceptions=True,
        )

        collected = []
        for peer, result in zip(peers, results):
            if isinstance(result, Exception):
                logger.error(f"Unexpected failure requesting from {peer.peer_id}: {result}")
            elif result is not None:
                collected.append(result)

        reports = self.validator.validate_reports(collected)
        for report in reports:
            self.store.save_peer_report(report)

        logger.info(f"Collected {len(reports)}/{len(peers)} peer reports")
        return reports

    async def _request_from_peer(
        self,
        peer: MeshPeer,
        fingerprint: Fingerprint,
        media_item_id: str,
    ) -> Optional[PeerReport]:
        request = FingerprintRequest(
            request_id=CryptoUtils.generate_uuid(),
            media_item_id=media_item_id,
            fingerprint_hash=fingerprint.hash,
            ephemeral_public_key=self.transport.identity.public_key,
            fingerprint=fingerprint,
        )
        try:
            response = await asyncio.wait_for(
                self._exchange(peer.peer_id, request), timeout=self.request_timeout
            )
        except (asyncio.TimeoutError, PeerTimeoutError):
            logger.warning(f"Peer {peer.peer_id} did not respond within {self.request_timeout:g}s")
            return None
        except (PeerConnectionError, MalformedMessageError) as e:
            logger.warning(f"No report from {peer.peer_id}: {e}")
            return None

        report = response.signed_report
        if response.request_id != request.request_id or report.media_item_id != media_item_id:
            logger.warning(f"Peer {peer.peer_id} answered a different request, ignoring")
            return None
        if report.peer_ephemeral_id != peer.peer_id or report.ephemeral_pub_key != peer.public_key:
            logger.warning(f"Peer {peer.peer_id} returned a report it did not sign, ignoring")
            return None
        return report

    async def _exchange(self, peer_id: str, request: FingerprintRequest) -> FingerprintResponse:
        if not self.transport.is_connected(peer_id):
            await self.transport.connect_to_peer(peer_id)
        return await self.transport.send_fingerprint_request(
            peer_id, request, timeout=self.request_timeout
        )

    # ------------------------------------------------------------------
    # Responder
    # ------------------------------------------------------------------
    async def handle_fingerprint_request(
        self,
        request: FingerprintRequest,
        peer: MeshPeer,
    ) -> FingerprintResponse:
        """Compare a requester's fingerprint with ours and sign the result."""
        local = self.lookup(request)
        score = 0.0
        proximity = ProximityLevel.FAR

        if local is None:
            logger.info(f"No local fingerprint for {request.media_item_id}, sending negative report")
        elif request.fingerprint is None:
            logger.warning(f"Request from {peer.peer_id} carries no fingerprint, sending negative report")
        elif fingerprint_digest(request.fingerprint) != request.fingerprint_hash:
            logger.warning(f"Fingerprint hash mismatch in request from {peer.peer_id}")
        else:
            comparison = self.comparator.compare(request.fingerprint, local)
            score = comparison.similarity
            proximity = proximity_level_for(comparison.proximity_estimate)
            logger.debug(
                f"Compared with {peer.peer_id}: similarity {score:.3f}, "
                f"{comparison.proximity_estimate.value}"
            )

        report = build_signed_report(
            self.transport.identity,
            self.transport.crypto,
            request.media_item_id,
            score,
            proximity_level=proximity,
        )
        return FingerprintResponse(
            request_id=request.request_id,
            media_item_id=request.media_item_id,
            confidence_score=report.confidence_score,
            signed_report=report,
        )
