"""
Receipt signature verification.

Checks the signed-data envelope against a single trusted root certificate.

Trust policy:
- Production: the signer certificate must chain (through the certificates
  embedded in the envelope) to the App Store root, and every certificate on
  the chain must be inside its validity window. Every issuer on the chain
  must be a CA (basicConstraints), within its path length and, when key usage
  is present, allowed to sign certificates.
- Non-production: chain verification is disabled. The local StoreKit test
  certificate signs receipts directly and is not linked to any root, so only
  the signature itself is checked.
"""

import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from structlog import get_logger

from iap_receipt.config import Settings
from iap_receipt.exceptions import MalformedFieldError, SignatureInvalidError
from iap_receipt.services.asn1 import TAG_OCTET_STRING, Cursor
from iap_receipt.services.container import SignedContainer, SignerInfo

logger = get_logger(__name__)

OID_MESSAGE_DIGEST = "1.2.840.113549.1.9.4"

# Digest algorithm OID -> (hashlib name, cryptography hash)
_DIGESTS: dict[str, tuple[str, type[hashes.HashAlgorithm]]] = {
    "1.3.14.3.2.26": ("sha1", hashes.SHA1),
    "2.16.840.1.101.3.4.2.4": ("sha224", hashes.SHA224),
    "2.16.840.1.101.3.4.2.1": ("sha256", hashes.SHA256),
    "2.16.840.1.101.3.4.2.2": ("sha384", hashes.SHA384),
    "2.16.840.1.101.3.4.2.3": ("sha512", hashes.SHA512),
}

_MAX_CHAIN_DEPTH = 10


@dataclass(frozen=True)
class TrustPolicy:
    """Trusted root and whether the signer chain must be verified against it."""

    root_certificate_path: str
    chain_verification_required: bool

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrustPolicy":
        return cls(
            root_certificate_path=settings.root_certificate_path,
            chain_verification_required=settings.chain_verification_required,
        )


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a DER or PEM certificate."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


class SignatureVerifier:
    """
    Verifies a SignedContainer against the policy's trusted root.

    Usage:
        verifier = SignatureVerifier(TrustPolicy.from_settings(settings))
        verifier.verify(container)
    """

    def __init__(self, policy: TrustPolicy) -> None:
        self.policy = policy

    def _load_root(self) -> x509.Certificate:
        path = Path(self.policy.root_certificate_path)
        try:
            return load_certificate(path.read_bytes())
        except (OSError, ValueError) as exc:
            logger.error("root_certificate_unreadable", path=str(path), error=str(exc))
            raise SignatureInvalidError(f"root certificate unreadable: {path}") from exc

    def verify(self, container: SignedContainer, now: datetime | None = None) -> None:
        """
        Verify every signer of the container.

        Raises:
            SignatureInvalidError: On any verification failure
        """
        root = self._load_root()

        if not container.signer_infos:
            logger.warning("receipt_signature_invalid", reason="no_signers")
            raise SignatureInvalidError("envelope has no signers")

        embedded = self._load_embedded(container)

        for signer_info in container.signer_infos:
            signer = self._find_signer(signer_info, embedded, root)
            self._verify_signer(signer_info, signer, container.payload)
            if self.policy.chain_verification_required:
                self._verify_chain(signer, embedded, root, now or datetime.now(UTC))

        logger.info(
            "receipt_signature_valid",
            signers=len(container.signer_infos),
            chain_verified=self.policy.chain_verification_required,
        )

    @staticmethod
    def _load_embedded(container: SignedContainer) -> list[x509.Certificate]:
        certificates = []
        for der in container.certificates:
            try:
                certificates.append(x509.load_der_x509_certificate(der))
            except ValueError as exc:
                raise SignatureInvalidError("embedded certificate unreadable") from exc
        return certificates

    @staticmethod
    def _find_signer(
        signer_info: SignerInfo,
        embedded: list[x509.Certificate],
        root: x509.Certificate,
    ) -> x509.Certificate:
        """Certificate named by the signer identifier; the root is a candidate too."""
        for certificate in [*embedded, root]:
            if signer_info.issuer is not None:
                if (
                    certificate.serial_number == signer_info.serial_number
                    and certificate.issuer.public_bytes() == signer_info.issuer
                ):
                    return certificate
            elif signer_info.subject_key_identifier is not None:
                try:
                    ski = certificate.extensions.get_extension_for_class(
                        x509.SubjectKeyIdentifier
                    ).value.digest
                except x509.ExtensionNotFound:
                    continue
                if ski == signer_info.subject_key_identifier:
                    return certificate

        logger.warning("receipt_signature_invalid", reason="signer_not_found")
        raise SignatureInvalidError("signer certificate not found")

    @staticmethod
    def _verify_signer(
        signer_info: SignerInfo,
        signer: x509.Certificate,
        content: bytes,
    ) -> None:
        digest = _DIGESTS.get(signer_info.digest_algorithm)
        if digest is None:
            raise SignatureInvalidError(
                f"unsupported digest algorithm {signer_info.digest_algorithm}"
            )
        hashlib_name, hash_class = digest
        content_digest = hashlib.new(hashlib_name, content).digest()

        if signer_info.signed_attributes_der is not None:
            attribute = signer_info.attribute(OID_MESSAGE_DIGEST)
            if attribute is None or len(attribute.values) != 1:
                raise SignatureInvalidError("messageDigest attribute missing")
            try:
                value_cursor = Cursor(attribute.values[0])
                header = value_cursor.read_header()
                if not header.is_universal(TAG_OCTET_STRING) or header.length is None:
                    raise SignatureInvalidError("messageDigest is not an OCTET STRING")
                signed_digest = attribute.values[0][
                    header.content_start : header.content_start + header.length
                ]
            except MalformedFieldError as exc:
                raise SignatureInvalidError("messageDigest unreadable") from exc
            if not hmac.compare_digest(signed_digest, content_digest):
                logger.warning("receipt_signature_invalid", reason="digest_mismatch")
                raise SignatureInvalidError("content digest does not match messageDigest")
            # Signature covers the attributes re-tagged as a universal SET
            signed_data = b"\x31" + signer_info.signed_attributes_der[1:]
        else:
            signed_data = content

        public_key = signer.public_key()
        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(
                    signer_info.signature, signed_data, padding.PKCS1v15(), hash_class()
                )
            elif isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signer_info.signature, signed_data, ec.ECDSA(hash_class()))
            else:
                raise SignatureInvalidError(f"unsupported signer key type {type(public_key)}")
        except (InvalidSignature, UnsupportedAlgorithm) as exc:
            logger.warning("receipt_signature_invalid", reason="signature_mismatch")
            raise SignatureInvalidError("signature does not verify") from exc

    @staticmethod
    def _check_validity(certificate: x509.Certificate, now: datetime) -> None:
        if not certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc:
            logger.warning(
                "receipt_signature_invalid",
                reason="certificate_expired",
                subject=certificate.subject.rfc4514_string(),
            )
            raise SignatureInvalidError("certificate outside its validity period")

    @staticmethod
    def _check_issuer(issuer: x509.Certificate, certificates_below: int) -> None:
        """An issuing certificate must be a CA allowed to sign this deep a chain."""
        subject = issuer.subject.rfc4514_string()
        try:
            extensions = issuer.extensions
            constraints = extensions.get_extension_for_class(x509.BasicConstraints).value
        except (x509.ExtensionNotFound, x509.DuplicateExtension, ValueError) as exc:
            logger.warning("receipt_signature_invalid", reason="issuer_not_ca", subject=subject)
            raise SignatureInvalidError("issuer is not a certificate authority") from exc

        if not constraints.ca:
            logger.warning("receipt_signature_invalid", reason="issuer_not_ca", subject=subject)
            raise SignatureInvalidError("issuer is not a certificate authority")

        if constraints.path_length is not None and certificates_below > constraints.path_length:
            logger.warning("receipt_signature_invalid", reason="path_length", subject=subject)
            raise SignatureInvalidError("issuer path length constraint exceeded")

        try:
            usage = extensions.get_extension_for_class(x509.KeyUsage).value
        except x509.ExtensionNotFound:
            return
        if not usage.key_cert_sign:
            logger.warning(
                "receipt_signature_invalid", reason="issuer_key_usage", subject=subject
            )
            raise SignatureInvalidError("issuer may not sign certificates")

    def _verify_chain(
        self,
        signer: x509.Certificate,
        embedded: list[x509.Certificate],
        root: x509.Certificate,
        now: datetime,
    ) -> None:
        """Follow issuer links from the signer up to the trusted root."""
        current = signer
        # Intermediate CAs between the next issuer and the signer
        intermediates = 0
        for _ in range(_MAX_CHAIN_DEPTH):
            self._check_validity(current, now)
            if current == root:
                return

            if current.issuer == root.subject:
                candidates = [root]
            else:
                candidates = [
                    cert
                    for cert in embedded
                    if cert.subject == current.issuer and cert != current
                ]

            issuer = None
            for candidate in candidates:
                try:
                    current.verify_directly_issued_by(candidate)
                except (ValueError, TypeError, InvalidSignature):
                    continue
                issuer = candidate
                break

            if issuer is None:
                logger.warning(
                    "receipt_signature_invalid",
                    reason="untrusted_chain",
                    subject=current.subject.rfc4514_string(),
                )
                raise SignatureInvalidError("signer does not chain to the trusted root")

            self._check_issuer(issuer, intermediates)
            intermediates += 1
            current = issuer

        raise SignatureInvalidError("certificate chain too long")
