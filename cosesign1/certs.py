# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the Apache 2.0 License.

from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger as LOG

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509 import Certificate
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from cosesign1.chain import split_chain
from cosesign1.errors import ChainVerificationFailed

# A reasonable chain has a handful of certificates, typically 3 or 4
MAX_CHAIN_LENGTH = 100
# Caps path building work on crafted chains
MAX_SIGNATURE_CHECKS = 100


def get_extension(cert: Certificate, ext_type):
    try:
        return cert.extensions.get_extension_for_class(ext_type).value
    except x509.ExtensionNotFound:
        return None


def _describe(cert: Certificate) -> str:
    return cert.subject.rfc4514_string() or "<empty subject>"


def check_validity(cert: Certificate, at: datetime):
    if at < cert.not_valid_before_utc or at > cert.not_valid_after_utc:
        raise ValueError(
            f"{_describe(cert)} is not valid at {at.isoformat()} "
            f"(valid from {cert.not_valid_before_utc.isoformat()} "
            f"to {cert.not_valid_after_utc.isoformat()})"
        )


def check_issuer_constraints(issuer: Certificate, intermediates_below: int):
    """
    Checks that issuer may sign the certificate below it in a path, given
    the number of intermediate certificates between it and the leaf.
    """
    basic_constraints = get_extension(issuer, x509.BasicConstraints)
    if basic_constraints is None or not basic_constraints.ca:
        raise ValueError(f"{_describe(issuer)} is not a CA")
    key_usage = get_extension(issuer, x509.KeyUsage)
    if key_usage is not None and not key_usage.key_cert_sign:
        raise ValueError(f"{_describe(issuer)} may not sign certificates")
    if (
        basic_constraints.path_length is not None
        and intermediates_below > basic_constraints.path_length
    ):
        raise ValueError(
            f"{_describe(issuer)} path length constraint {basic_constraints.path_length} exceeded"
        )


def check_directly_issued_by(cert: Certificate, issuer: Certificate):
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise ValueError(
            f"{_describe(cert)} not issued by {_describe(issuer)}: {exc}"
        ) from exc
    except InvalidSignature as exc:
        raise ValueError(
            f"{_describe(cert)} signature does not verify with {_describe(issuer)}"
        ) from exc


def _identity(cert: Certificate):
    return cert.subject, cert.public_key().public_bytes(
        Encoding.DER, PublicFormat.SubjectPublicKeyInfo
    )


class _SignatureBudgetExceeded(Exception):
    pass


class _PathBuilder:
    """
    Depth-first search for paths from a leaf to any of the roots.

    Certificates sharing subject and key with one already in the path are
    never added to it. At most MAX_SIGNATURE_CHECKS signatures are checked
    over the whole search.
    """

    def __init__(self, intermediates, roots, at):
        self.candidates = [(cert, _identity(cert)) for cert in roots + intermediates]
        self.roots = roots
        self.at = at
        self.reasons: List[str] = []
        self.signature_checks = 0

    def _check_link(self, path, candidate):
        self.signature_checks += 1
        if self.signature_checks > MAX_SIGNATURE_CHECKS:
            raise _SignatureBudgetExceeded(
                f"More than {MAX_SIGNATURE_CHECKS} signature checks while building paths"
            )
        check_directly_issued_by(path[-1], candidate)
        check_validity(candidate, self.at)
        # the leaf does not count against path length constraints
        check_issuer_constraints(candidate, len(path) - 1)

    def build(self, path, identities) -> List[List[Certificate]]:
        current = path[-1]
        if current in self.roots:
            return [list(path)]

        paths = []
        for candidate, identity in self.candidates:
            if candidate.subject != current.issuer or identity in identities:
                continue
            try:
                self._check_link(path, candidate)
            except ValueError as exc:
                self.reasons.append(str(exc))
                continue
            paths.extend(self.build(path + [candidate], identities + [identity]))
        return paths


def verify_certificate_chain(
    chain: List[Certificate],
    trusted_roots: Optional[List[Certificate]] = None,
    ignore_expiry: bool = False,
    verbose: bool = False,
) -> List[List[Certificate]]:
    """
    Build every valid path from the leaf (chain[0]) to a trusted root.

    The chain is split by position only: chain[1:-1] are the intermediates
    and, unless trusted_roots is given, chain[-1] is the only trusted root.
    Any extended key usage is accepted. With ignore_expiry, certificates are
    checked at the leaf's own expiry time rather than now, i.e. "was the chain
    valid when the leaf was issued for use".

    :return: list of paths, each leaf first and root last.
    """
    leaf, intermediates, root = split_chain(chain)
    roots = list(trusted_roots) if trusted_roots else [root]

    if ignore_expiry:
        at = leaf.not_valid_after_utc
    else:
        at = datetime.now(timezone.utc)
    LOG.debug(
        f"Verifying chain of {len(chain)} certificate(s) against {len(roots)} root(s) at {at.isoformat()}"
    )

    builder = _PathBuilder(intermediates, roots, at)
    reasons = builder.reasons
    paths: List[List[Certificate]] = []
    try:
        check_validity(leaf, at)
        paths = builder.build([leaf], [_identity(leaf)])
    except ValueError as exc:
        reasons.append(str(exc))
    except _SignatureBudgetExceeded as exc:
        reasons.append(str(exc))

    if not paths:
        for reason in reasons:
            LOG.debug(reason)
        detail = "; ".join(reasons) or "no path to a trusted root"
        raise ChainVerificationFailed(
            "Certificate chain verification failed", detail if verbose else None
        )

    LOG.debug(f"Found {len(paths)} valid certificate path(s)")
    return paths
