from certverify.repositories.certificate_repository import (
    AuditEntry,
    CertificateQuery,
    CertificateRepository,
    SqlAlchemyCertificateRepository,
    VerificationEntry,
)

__all__ = [
    "AuditEntry",
    "CertificateQuery",
    "CertificateRepository",
    "SqlAlchemyCertificateRepository",
    "VerificationEntry",
]
