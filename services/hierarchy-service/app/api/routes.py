"""HTTP route definitions for the account hierarchy service."""

from __future__ import annotations

import logging
from datetime import datetime

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from ..config import get_settings
from ..domain.account import Account, AccountType, BillingInfo, BillingStatus, PlanLimits
from ..domain.contracts import AccountPatch, BillingOverrides, CreateAccountInput, SettingsOverrides
from ..domain.errors import (
    AccessDenied,
    AccountSuspended,
    ActiveJobsRunning,
    Conflict,
    DepthExceeded,
    HasChildren,
    HierarchyError,
    InvalidAccountType,
    NotFound,
    ParentDisallowsSubAccounts,
    QuotaExceeded,
    StorageUnavailable,
    UpstreamUnavailable,
)
from ..domain.permissions import CapabilitySet
from ..domain.service import AccountHierarchyService, ActiveContext
from ..domain.usage import NodeUsage, UsageSummary
from ..security.rate_limiter import SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter
from ..security.tokens import Principal, decode_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class PlanLimitsModel(BaseModel):
    storage_bytes: int | None = Field(default=None, ge=0)
    source_count: int | None = Field(default=None, ge=0)
    job_count: int | None = Field(default=None, ge=0)
    api_calls: int | None = Field(default=None, ge=0)

    @classmethod
    def from_domain(cls, limits: PlanLimits) -> "PlanLimitsModel":
        return cls(
            storage_bytes=limits.storage_bytes,
            source_count=limits.source_count,
            job_count=limits.job_count,
            api_calls=limits.api_calls,
        )

    def to_domain(self) -> PlanLimits:
        return PlanLimits(**self.model_dump())


class SettingsModel(BaseModel):
    """Settings overrides; omitted fields keep their default or current value."""

    timezone: str | None = None
    allow_sub_accounts: bool | None = None
    max_sub_accounts: int | None = Field(default=None, ge=0)
    retention_days: int | None = Field(default=None, ge=1)
    two_factor_required: bool | None = None

    def to_domain(self) -> SettingsOverrides:
        return SettingsOverrides(**self.model_dump())


class BillingModel(BaseModel):
    status: BillingStatus | None = None
    plan: str | None = None
    limits: PlanLimitsModel | None = None

    def to_domain(self) -> BillingOverrides:
        return BillingOverrides(
            status=self.status,
            plan=self.plan,
            limits=self.limits.to_domain() if self.limits else None,
        )


class CreateAccountRequest(BaseModel):
    """Payload accepted when creating a root account or a sub-account."""

    name: str = Field(..., min_length=1, max_length=200)
    company: str = ""
    description: str = ""
    account_type: AccountType = AccountType.root
    settings: SettingsModel | None = None
    billing: BillingModel | None = None

    def to_domain(self) -> CreateAccountInput:
        return CreateAccountInput(
            name=self.name,
            account_type=self.account_type,
            company=self.company,
            description=self.description,
            settings=self.settings.to_domain() if self.settings else SettingsOverrides(),
            billing=self.billing.to_domain() if self.billing else BillingOverrides(),
        )


class UpdateAccountRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    company: str | None = None
    description: str | None = None
    settings: SettingsModel | None = None
    billing: BillingModel | None = None
    expected_version: int | None = None

    def to_domain(self) -> AccountPatch:
        return AccountPatch(
            name=self.name,
            company=self.company,
            description=self.description,
            settings=self.settings.to_domain() if self.settings else None,
            billing=self.billing.to_domain() if self.billing else None,
        )


class SwitchContextRequest(BaseModel):
    """Optional body; the user is always taken from the session token."""

    user_id: str | None = None


class AccountResponse(BaseModel):
    """Serialised representation of an `Account` node."""

    account_id: str
    parent_account_id: str | None
    name: str
    company: str
    description: str
    account_path: str
    level: int
    account_type: AccountType
    owner_user_id: str | None
    settings: SettingsModel
    billing: BillingModel
    usage: dict[str, int]
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, account: Account) -> "AccountResponse":
        """Build a response model from the domain node."""
        return cls(
            account_id=account.account_id,
            parent_account_id=account.parent_account_id,
            name=account.name,
            company=account.company,
            description=account.description,
            account_path=account.account_path,
            level=account.level,
            account_type=account.account_type,
            owner_user_id=account.owner_user_id,
            settings=SettingsModel(
                timezone=account.settings.timezone,
                allow_sub_accounts=account.settings.allow_sub_accounts,
                max_sub_accounts=account.settings.max_sub_accounts,
                retention_days=account.settings.retention_days,
                two_factor_required=account.settings.two_factor_required,
            ),
            billing=BillingModel(
                status=account.billing.status,
                plan=account.billing.plan,
                limits=PlanLimitsModel.from_domain(account.billing.limits),
            ),
            usage={
                "storage_bytes": account.usage.storage_bytes,
                "source_count": account.usage.source_count,
                "job_count": account.usage.job_count,
                "api_calls": account.usage.api_calls,
            },
            version=account.version,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class UsageSummaryResponse(BaseModel):
    storage_bytes: int
    source_count: int
    job_count: int
    api_calls: int
    descendant_count: int

    @classmethod
    def from_domain(cls, summary: UsageSummary) -> "UsageSummaryResponse":
        return cls(
            storage_bytes=summary.storage_bytes,
            source_count=summary.source_count,
            job_count=summary.job_count,
            api_calls=summary.api_calls,
            descendant_count=summary.descendant_count,
        )


class HierarchyNodeResponse(BaseModel):
    account: AccountResponse
    aggregated_usage: UsageSummaryResponse
    children: list["HierarchyNodeResponse"] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, rolled: NodeUsage) -> "HierarchyNodeResponse":
        return cls(
            account=AccountResponse.from_domain(rolled.node.account),
            aggregated_usage=UsageSummaryResponse.from_domain(rolled.totals),
            children=[cls.from_domain(child) for child in rolled.children],
        )


HierarchyNodeResponse.model_rebuild()


class HierarchyResponse(BaseModel):
    hierarchy: HierarchyNodeResponse
    total: int


class AncestorsResponse(BaseModel):
    items: list[AccountResponse]


class EffectiveBillingResponse(BaseModel):
    status: BillingStatus
    plan: str
    limits: PlanLimitsModel
    source_account_id: str | None

    @classmethod
    def from_domain(cls, billing: BillingInfo) -> "EffectiveBillingResponse":
        return cls(
            status=billing.status,
            plan=billing.plan,
            limits=PlanLimitsModel.from_domain(billing.limits),
            source_account_id=billing.source_account_id,
        )


class UsageReportResponse(BaseModel):
    account_id: str
    usage: UsageSummaryResponse
    billing: EffectiveBillingResponse
    exceeded: list[str]
    approximate: bool = True


class CapabilityDecisionResponse(BaseModel):
    capability: str
    allowed: bool
    decided_by: str


class PermissionsResponse(BaseModel):
    user_id: str
    account_id: str
    capabilities: list[str]
    decisions: list[CapabilityDecisionResponse]

    @classmethod
    def from_domain(cls, resolved: CapabilitySet) -> "PermissionsResponse":
        return cls(
            user_id=resolved.user_id,
            account_id=resolved.account_id,
            capabilities=sorted(resolved.granted),
            decisions=[
                CapabilityDecisionResponse(
                    capability=decision.capability,
                    allowed=decision.allowed,
                    decided_by=decision.decided_by,
                )
                for decision in resolved.decisions
            ],
        )


class ContextResponse(BaseModel):
    session_id: str
    user_id: str
    account: AccountResponse
    capabilities: list[str]
    switched_at: datetime

    @classmethod
    def from_domain(cls, active: ActiveContext) -> "ContextResponse":
        return cls(
            session_id=active.context.session_id,
            user_id=active.context.user_id,
            account=AccountResponse.from_domain(active.account),
            capabilities=sorted(active.capabilities.granted),
            switched_at=active.context.switched_at,
        )


class AvailableAccount(BaseModel):
    account: AccountResponse
    role: str
    capabilities: dict[str, bool]


class AvailableAccountsResponse(BaseModel):
    items: list[AvailableAccount]


settings = get_settings()


def _build_rate_limiter() -> SlidingWindowRateLimiter | RedisSlidingWindowRateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on redis availability
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()


def get_service(request: Request) -> AccountHierarchyService:
    """Resolve the `AccountHierarchyService` stored on the FastAPI application state."""
    service: AccountHierarchyService = request.app.state.hierarchy_service
    return service


def get_principal(authorization: str | None = Header(default=None)) -> Principal:
    """Authenticate the bearer token carried by the request."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bearer token required")
    try:
        return decode_access_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token") from exc


def _enforce_rate_limit(operation: str, principal: Principal, response: Response) -> None:
    """Count the call against the caller's window; fails open when Redis is unreachable."""
    try:
        decision = rate_limiter.hit(f"{operation}:{principal.user_id}")
    except RedisError as exc:
        logger.warning("rate limiter unavailable for %s: %s", operation, exc)
        return
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="rate limited",
            headers={"Retry-After": str(decision.retry_after), "X-RateLimit-Remaining": "0"},
        )
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)


_STATUS_BY_ERROR: tuple[tuple[type[HierarchyError], int], ...] = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (AccessDenied, status.HTTP_403_FORBIDDEN),
    (AccountSuspended, status.HTTP_403_FORBIDDEN),
    (QuotaExceeded, status.HTTP_409_CONFLICT),
    (Conflict, status.HTTP_409_CONFLICT),
    (HasChildren, status.HTTP_409_CONFLICT),
    (ActiveJobsRunning, status.HTTP_409_CONFLICT),
    (DepthExceeded, status.HTTP_400_BAD_REQUEST),
    (InvalidAccountType, status.HTTP_400_BAD_REQUEST),
    (ParentDisallowsSubAccounts, status.HTTP_400_BAD_REQUEST),
    (UpstreamUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _http_error(exc: Exception) -> HTTPException:
    """Translate domain failures into HTTP errors carrying the error code."""
    if isinstance(exc, ValueError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = mapped
            break
    if status_code == status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("unmapped hierarchy failure: %s", exc)
    headers = {"Retry-After": "1"} if getattr(exc, "transient", False) else None
    code = getattr(exc, "code", "invalid_request")
    return HTTPException(status_code=status_code, detail={"code": code, "message": str(exc)}, headers=headers)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: CreateAccountRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> AccountResponse:
    """Create a standalone root account owned by the caller."""
    _enforce_rate_limit("create-account", principal, response)
    try:
        account = service.create_root_account(principal.user_id, payload.to_domain())
    except (HierarchyError, ValueError) as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: str,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> AccountResponse:
    try:
        account = service.get_account(principal.user_id, account_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: str,
    payload: UpdateAccountRequest,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> AccountResponse:
    """Update profile, settings or billing; a rename rewrites descendant paths."""
    try:
        account = service.update_account(
            principal.user_id,
            account_id,
            payload.to_domain(),
            expected_version=payload.expected_version,
        )
    except (HierarchyError, ValueError) as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.post(
    "/accounts/{parent_id}/children",
    response_model=AccountResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_sub_account(
    parent_id: str,
    payload: CreateAccountRequest,
    response: Response,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> AccountResponse:
    """Create a sub-account under ``parent_id``."""
    _enforce_rate_limit("create-child", principal, response)
    try:
        account = service.create_sub_account(principal.user_id, parent_id, payload.to_domain())
    except (HierarchyError, ValueError) as exc:
        raise _http_error(exc) from exc
    return AccountResponse.from_domain(account)


@router.get("/accounts/{account_id}/hierarchy", response_model=HierarchyResponse)
def get_hierarchy(
    account_id: str,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> HierarchyResponse:
    """Return the subtree with usage rolled up at every node."""
    try:
        rolled = service.hierarchy(principal.user_id, account_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return HierarchyResponse(
        hierarchy=HierarchyNodeResponse.from_domain(rolled),
        total=rolled.totals.descendant_count + 1,
    )


@router.get("/accounts/{account_id}/ancestors", response_model=AncestorsResponse)
def get_ancestors(
    account_id: str,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> AncestorsResponse:
    try:
        chain = service.ancestors(principal.user_id, account_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return AncestorsResponse(items=[AccountResponse.from_domain(account) for account in chain])


@router.get("/accounts/{account_id}/usage", response_model=UsageReportResponse)
def get_usage(
    account_id: str,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> UsageReportResponse:
    """Return approximate subtree usage reconciled against the effective plan."""
    try:
        report = service.usage_report(principal.user_id, account_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return UsageReportResponse(
        account_id=report.account_id,
        usage=UsageSummaryResponse.from_domain(report.totals),
        billing=EffectiveBillingResponse.from_domain(report.billing),
        exceeded=report.exceeded,
    )


@router.get("/accounts/{account_id}/billing", response_model=EffectiveBillingResponse)
def get_effective_billing(
    account_id: str,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> EffectiveBillingResponse:
    try:
        billing = service.effective_billing(principal.user_id, account_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return EffectiveBillingResponse.from_domain(billing)


@router.post("/accounts/{account_id}/switch", response_model=ContextResponse)
def switch_context(
    account_id: str,
    response: Response,
    payload: SwitchContextRequest | None = None,
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> ContextResponse:
    """Make ``account_id`` the active account of the caller's session."""
    if payload is not None and payload.user_id and payload.user_id != principal.user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="cannot switch another user's session")
    _enforce_rate_limit("switch", principal, response)
    try:
        active = service.switch_context(principal.session_id, principal.user_id, account_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return ContextResponse.from_domain(active)


@router.delete("/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: str,
    force: bool = Query(default=False),
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> Response:
    """Delete an account; ``force`` removes the whole subtree leaves first."""
    try:
        service.delete_account(principal.user_id, account_id, force=force)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/accounts/{account_id}/permissions", response_model=PermissionsResponse)
def get_permissions(
    account_id: str,
    user_id: str | None = Query(default=None, alias="userId"),
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> PermissionsResponse:
    """Return the resolved capability set; no access yields an empty set, not an error."""
    try:
        resolved = service.permissions(principal.user_id, account_id, user_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return PermissionsResponse.from_domain(resolved)


@router.get("/context", response_model=ContextResponse)
def get_context(
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> ContextResponse:
    try:
        active = service.current_context(principal.session_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    if active is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="no account selected")
    return ContextResponse.from_domain(active)


@router.delete("/context", status_code=status.HTTP_204_NO_CONTENT)
def end_context(
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> Response:
    try:
        service.end_context(principal.session_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/me/accounts", response_model=AvailableAccountsResponse)
def list_available_accounts(
    principal: Principal = Depends(get_principal),
    service: AccountHierarchyService = Depends(get_service),
) -> AvailableAccountsResponse:
    """Accounts the caller can pick as context, shallowest first."""
    try:
        accounts = service.available_accounts(principal.user_id)
    except HierarchyError as exc:
        raise _http_error(exc) from exc
    return AvailableAccountsResponse(
        items=[
            AvailableAccount(
                account=AccountResponse.from_domain(account),
                role=grant.role,
                capabilities=grant.capabilities,
            )
            for account, grant in accounts
        ]
    )
