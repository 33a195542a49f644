"""Parent link codes: rate-limited verification and bulk issuance.

Clients never read the link-code collection directly; verification goes
through CodeVerifier, which audits every outcome except rate-limit
rejections.
"""
import asyncio
import logging
import re
import secrets
from datetime import timedelta
from typing import Any, Optional

from lumi.config import settings
from lumi.errors import (
    FailedPrecondition,
    InternalError,
    InvalidArgument,
    NotFound,
    PermissionDenied,
    RateExceeded,
    ServiceError,
    Unauthenticated,
)
from lumi.models import (
    AuditLogEntry,
    BulkLinkCodeOut,
    LinkCode,
    LinkCodeOut,
    LinkCodeStatus,
    LinkCodeType,
    StudentLinkInfo,
    utcnow,
)
from lumi.models.audit import CODE_VERIFICATION_FAILED, CODE_VERIFICATION_SUCCESS
from lumi.models.base import Clock
from lumi.services.rate_limit import RateLimiter
from lumi.services.stats import as_utc
from lumi.store import AuditSink, DuplicateLinkCodeError, Store

logger = logging.getLogger(__name__)

# No 0/O or 1/I: codes are read off paper and typed by hand.
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
_CODE_RE = re.compile(r"[A-Z0-9]{8}")

EXPIRED_MESSAGE = "This code has expired. Please request a new code."

# status -> (audit reason, message shown to the parent)
_STATUS_FAILURES: dict[str, tuple[str, str]] = {
    LinkCodeStatus.USED.value: ("code_already_used", "This code has already been used by another parent."),
    LinkCodeStatus.EXPIRED.value: ("code_expired", EXPIRED_MESSAGE),
    LinkCodeStatus.REVOKED.value: ("code_revoked", "This code has been revoked."),
}
_INACTIVE_FAILURE = ("code_not_active", "This code is no longer valid.")


def normalize_code(raw: Any) -> str:
    code = str(raw).upper() if raw is not None else ""
    if not _CODE_RE.fullmatch(code):
        raise InvalidArgument("Invalid code format. Code must be 8 alphanumeric characters.")
    return code


def generate_code(length: int = CODE_LENGTH) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def rate_limit_key(ip: str) -> str:
    return f"verify_attempt_{ip}"


class CodeVerifier:
    def __init__(self, store: Store, audit: AuditSink, rate_limiter: RateLimiter, clock: Clock = utcnow):
        self.store = store
        self.audit = audit
        self.rate_limiter = rate_limiter
        self.clock = clock

    async def verify(self, raw_code: Any, client_ip: Optional[str]) -> LinkCodeOut:
        code = normalize_code(raw_code)
        ip = client_ip or "unknown"
        try:
            return await self._verify(code, ip)
        except ServiceError:
            raise
        except Exception:
            logger.exception("Unexpected error in code verification: code=%s ip=%s", code, ip)
            raise InternalError("An error occurred while verifying the code. Please try again.")

    async def _verify(self, code: str, ip: str) -> LinkCodeOut:
        if not await self.rate_limiter.hit(rate_limit_key(ip)):
            logger.warning("Rate limit exceeded for code verification: ip=%s code=%s", ip, code)
            raise RateExceeded("Too many attempts. Please wait a minute and try again.")

        link_code = await self.store.find_link_code(code)
        if not link_code:
            await self._record_failure(code, ip, "code_not_found")
            raise NotFound("Invalid or expired code. Please check with your school.")

        if link_code.status != LinkCodeStatus.ACTIVE.value:
            reason, message = _STATUS_FAILURES.get(link_code.status, _INACTIVE_FAILURE)
            if link_code.status == LinkCodeStatus.REVOKED.value and link_code.revoke_reason:
                message = link_code.revoke_reason
            await self._record_failure(code, ip, reason)
            raise FailedPrecondition(message)

        # Status can still read active until the expiry sweep catches up.
        if link_code.expires_at and as_utc(link_code.expires_at) < self.clock():
            await self._record_failure(code, ip, "code_expired")
            raise FailedPrecondition(EXPIRED_MESSAGE)

        await self.audit.record(
            AuditLogEntry(
                type=CODE_VERIFICATION_SUCCESS,
                code=code,
                code_id=link_code.id,
                student_id=link_code.student_id,
                school_id=link_code.school_id,
                ip=ip,
                timestamp=self.clock(),
            )
        )
        logger.info("Link code verified: code_id=%s school_id=%s", link_code.id, link_code.school_id)
        return LinkCodeOut.from_link_code(link_code)

    async def _record_failure(self, code: str, ip: str, reason: str) -> None:
        await self.audit.record(
            AuditLogEntry(type=CODE_VERIFICATION_FAILED, code=code, reason=reason, ip=ip, timestamp=self.clock())
        )


class BulkCodeIssuer:
    """One code that links a family to several students of the same school."""

    def __init__(
        self,
        store: Store,
        clock: Clock = utcnow,
        max_students: int = settings.bulk_code_max_students,
        max_generation_attempts: int = settings.link_code_max_generation_attempts,
        max_validity_days: int = settings.link_code_max_validity_days,
    ):
        self.store = store
        self.clock = clock
        self.max_students = max_students
        self.max_generation_attempts = max_generation_attempts
        self.max_validity_days = max_validity_days

    async def issue(
        self,
        caller_id: Optional[str],
        student_ids: Any,
        school_id: Optional[str],
        validity_days: int = settings.link_code_validity_days,
    ) -> BulkLinkCodeOut:
        if not caller_id:
            raise Unauthenticated("You must be logged in to create bulk link codes.")
        if not isinstance(student_ids, list) or not student_ids:
            raise InvalidArgument("You must provide at least one student ID.")
        if len(student_ids) > self.max_students:
            raise InvalidArgument(f"Maximum {self.max_students} students can be linked with a single code.")
        if any(not isinstance(sid, str) or not sid.strip() for sid in student_ids):
            raise InvalidArgument("Student IDs must be non-empty strings.")
        if not school_id:
            raise InvalidArgument("School ID is required.")
        if not isinstance(validity_days, int) or not 1 <= validity_days <= self.max_validity_days:
            raise InvalidArgument(f"Validity must be between 1 and {self.max_validity_days} days.")

        try:
            return await self._issue(caller_id, student_ids, school_id, validity_days)
        except ServiceError:
            raise
        except Exception:
            logger.exception("Error creating bulk link code: student_ids=%s school_id=%s", student_ids, school_id)
            raise InternalError("An error occurred while creating the bulk link code.")

    async def _issue(self, caller_id: str, student_ids: list[str], school_id: str, validity_days: int) -> BulkLinkCodeOut:
        caller = await self.store.get_user(caller_id)
        if not caller or not caller.is_active or caller.school_id != school_id:
            raise PermissionDenied("You do not have permission to create link codes for this school.")
        if not caller.is_staff:
            raise PermissionDenied("Only administrators and teachers can create bulk link codes.")

        students = await asyncio.gather(*(self.store.get_student(school_id, sid) for sid in student_ids))
        missing = [sid for sid, student in zip(student_ids, students) if student is None]
        if missing:
            raise NotFound(f"{len(missing)} student(s) not found.")

        students_info = [
            StudentLinkInfo(
                student_id=s.id,
                first_name=s.first_name,
                last_name=s.last_name,
                full_name=f"{s.first_name} {s.last_name}",
            )
            for s in students
        ]
        now = self.clock()
        link_code = await self._insert_unique(
            LinkCode(
                code="",
                type=LinkCodeType.BULK,
                student_ids=student_ids,
                school_id=school_id,
                status=LinkCodeStatus.ACTIVE.value,
                created_at=now,
                expires_at=now + timedelta(days=validity_days),
                created_by=caller_id,
                metadata={
                    "students": [info.model_dump() for info in students_info],
                    "student_count": len(student_ids),
                },
            )
        )

        logger.info(
            "Bulk link code created: code_id=%s student_count=%s school_id=%s created_by=%s",
            link_code.id,
            len(student_ids),
            school_id,
            caller_id,
        )
        return BulkLinkCodeOut(
            code_id=link_code.id,
            code=link_code.code,
            student_count=len(student_ids),
            students=students_info,
            expires_at=link_code.expires_at,
        )

    async def _insert_unique(self, draft: LinkCode) -> LinkCode:
        """Draw codes until one is free among active codes and the insert sticks."""
        for _ in range(self.max_generation_attempts):
            code = generate_code()
            if await self.store.active_link_code_exists(code):
                continue
            try:
                return await self.store.insert_link_code(draft.model_copy(update={"code": code}))
            except DuplicateLinkCodeError:
                logger.info("Link code taken concurrently, drawing again")
        raise RuntimeError(f"No free link code after {self.max_generation_attempts} attempts")
