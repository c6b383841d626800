"""ProvenanceVerifier — checks embedded build metadata against the checkout."""

from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ValidationError

from shipline.errors import ProvenanceMismatch
from shipline.providers.base import ContainerRuntime, ProviderError
from shipline.release.models import ProvenanceRecord

logger = logging.getLogger(__name__)

PROVENANCE_PATH = "/build-info.json"
LABEL_PREFIX = "org.shipline."
MIN_COMMIT_PREFIX = 6


def provenance_labels(record: ProvenanceRecord) -> dict[str, str]:
    """Image labels carrying *record*."""
    return {f"{LABEL_PREFIX}{k}": str(v) for k, v in record.model_dump().items()}


def commits_match(embedded: str, expected: str, *, expected_is_prefix: bool = False) -> bool:
    """Return *True* if *embedded* names the commit *expected* names.

    Commits must be equal.  When *expected_is_prefix* is set (the caller
    only knows an abbreviated hash, e.g. from a version tag), *embedded*
    may instead extend *expected*, provided *expected* has at least
    :data:`MIN_COMMIT_PREFIX` characters.
    """
    a = embedded.strip().lower()
    b = expected.strip().lower()
    if not a or not b:
        return False
    if a == b:
        return True
    return expected_is_prefix and len(b) >= MIN_COMMIT_PREFIX and a.startswith(b)


class VerificationResult(BaseModel):
    """Outcome of one provenance check.

    ``degraded`` is set when the artifact carries no metadata at all; the
    caller must then rely on the content gate.
    """

    image_ref: str
    embedded: ProvenanceRecord | None = None
    degraded: bool = False
    source_checked: bool = True


class ProvenanceVerifier:
    """Read and verify the provenance an artifact was built with.

    Metadata is read from :data:`PROVENANCE_PATH` inside the image, and
    from the ``org.shipline.*`` image labels when that file is absent.

    Parameters
    ----------
    runtime:
        Container runtime used to inspect images.
    """

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime

    def read_embedded(self, image_ref: str) -> ProvenanceRecord | None:
        """Return the embedded record, or *None* if there is none.

        Raises
        ------
        ProvenanceMismatch
            If metadata is present but malformed.
        """
        try:
            raw = self.runtime.read_file(image_ref, PROVENANCE_PATH)
            labels = {} if raw is not None else self.runtime.labels(image_ref)
        except ProviderError as exc:
            raise ProvenanceMismatch(
                f"Cannot inspect {image_ref}", detail=str(exc),
            ) from exc

        try:
            if raw is not None:
                return ProvenanceRecord.from_json(raw)
            fields = {
                key[len(LABEL_PREFIX):]: value
                for key, value in labels.items()
                if key.startswith(LABEL_PREFIX)
            }
            if not fields:
                return None
            return ProvenanceRecord.model_validate(fields)
        except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
            raise ProvenanceMismatch(
                f"Malformed provenance metadata in {image_ref}", detail=str(exc),
            ) from exc

    def verify(
        self,
        image_ref: str,
        *,
        expected_commit: str,
        expected_source_hash: str | None,
        commit_is_prefix: bool = False,
    ) -> VerificationResult:
        """Compare embedded metadata with the expected source state.

        *expected_source_hash* may be *None* when the caller has no checkout
        to hash; only the commit is compared then.  Set *commit_is_prefix*
        when *expected_commit* is an abbreviated hash.

        Raises
        ------
        ProvenanceMismatch
            If any present field disagrees with what is expected.
        """
        embedded = self.read_embedded(image_ref)
        if embedded is None:
            logger.warning(
                "No provenance metadata in %s; falling back to content gate", image_ref,
            )
            return VerificationResult(image_ref=image_ref, degraded=True)

        problems = []
        if not commits_match(
            embedded.git_commit, expected_commit, expected_is_prefix=commit_is_prefix,
        ):
            problems.append(
                f"git_commit {embedded.git_commit} != expected {expected_commit}"
            )
        if expected_source_hash is None:
            logger.info("No source hash to compare for %s; commit checked only", image_ref)
        elif embedded.source_hash != expected_source_hash:
            problems.append(
                f"source_hash {embedded.source_hash[:12]} != expected {expected_source_hash[:12]}"
            )

        if problems:
            raise ProvenanceMismatch(
                f"Provenance mismatch for {image_ref}", detail="; ".join(problems),
            )

        logger.info("Provenance verified for %s (%s)", image_ref, embedded.git_commit[:12])
        return VerificationResult(
            image_ref=image_ref,
            embedded=embedded,
            source_checked=expected_source_hash is not None,
        )
