"""
Digest - Subject Fingerprints.

============================================================
PURPOSE
============================================================
Deduplicate low-tier matches of the same subject.

fingerprint = "{subject_id}:{sha256(canonical biometrics)}"

Canonical form sorts keys inside every biometric record and then
sorts the records, so field order and list order never change the
key.

============================================================
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from scan_engine.types import Scan


UNKNOWN_SUBJECT = "unknown"


def canonical_biometrics(biometrics: Optional[List[Dict[str, Any]]]) -> str:
    records = sorted(
        json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
        for record in (biometrics or [])
    )
    return json.dumps(records, separators=(",", ":"))


def subject_fingerprint(
    subject_id: Optional[str],
    biometrics: Optional[List[Dict[str, Any]]],
) -> str:
    digest = hashlib.sha256(canonical_biometrics(biometrics).encode("utf-8")).hexdigest()
    return f"{subject_id or UNKNOWN_SUBJECT}:{digest}"


@dataclass
class DigestCandidate:
    """Best-scoring low-tier match for one fingerprint."""

    fingerprint: str
    account_id: str
    scan_id: str
    subject_id: Optional[str]
    subject_name: Optional[str]
    score: float
    view_url: Optional[str]
    occurred_at: Optional[datetime]


def build_candidates(scans: Iterable[Scan]) -> Dict[str, Dict[str, DigestCandidate]]:
    """
    Group scans by account, then by fingerprint, keeping the highest score.

    Returns:
        {account_id: {fingerprint: DigestCandidate}}
    """
    grouped: Dict[str, Dict[str, DigestCandidate]] = {}

    for scan in scans:
        if scan.top_score is None:
            continue

        fingerprint = subject_fingerprint(scan.subject_id, scan.biometrics)
        candidates = grouped.setdefault(scan.account_id, {})
        current = candidates.get(fingerprint)

        if current is None or scan.top_score > current.score:
            candidates[fingerprint] = DigestCandidate(
                fingerprint=fingerprint,
                account_id=scan.account_id,
                scan_id=scan.scan_id,
                subject_id=scan.subject_id,
                subject_name=scan.subject_name,
                score=scan.top_score,
                view_url=scan.view_url,
                occurred_at=scan.created_at,
            )

    return grouped
