from certverify.models.certificate import (
    AuditLog,
    Certificate,
    CertificateStatus,
    VerificationLog,
)

__all__ = ["AuditLog", "Certificate", "CertificateStatus", "VerificationLog"]
