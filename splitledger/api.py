import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import config, configure_logging
from .errors import (
    DuplicateFriendshipError,
    LedgerServiceError,
    NotFoundError,
    NotGroupMemberError,
    SplitMismatchError,
    StoreUnavailableError,
    UserNotFoundError,
    ValidationError,
)
from .models import (
    ActivityEntry,
    AddExpenseRequest,
    AddFriendRequest,
    AddGroupExpenseRequest,
    CreateGroupRequest,
    DashboardSummary,
    FriendExpenseHistory,
    Group,
    GroupDetail,
    Identity,
    Member,
    RegisterUserRequest,
    Reminder,
    SettlementRequest,
    User,
)
from .service import LedgerService
from .storage import create_storage

logger = logging.getLogger(__name__)

# Most specific first: SplitMismatchError and NotGroupMemberError are ValidationErrors
ERROR_STATUS = [
    (SplitMismatchError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotGroupMemberError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UserNotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateFriendshipError, status.HTTP_409_CONFLICT),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(error: LedgerServiceError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def get_identity(
    x_user_phone: str = Header(..., description="Caller phone number supplied by the auth layer"),
    x_user_name: str = Header(default=""),
    x_user_uid: Optional[str] = Header(default=None),
) -> Identity:
    identity = Identity(phone=x_user_phone, name=x_user_name, uid=x_user_uid)
    if not identity.phone:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing caller identity")
    return identity


def create_app(service: Optional[LedgerService] = None, root_path: str = "") -> FastAPI:
    configure_logging()
    ledger_service = service or LedgerService(create_storage(config.STORAGE_PATH))

    app = FastAPI(
        title="SplitLedger API",
        description="Expense splitting ledger: friends, groups, settlements and recompute-on-read balances",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.ledger_service = ledger_service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"error": exc.code, "detail": exc.message})

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": config.SERVICE_NAME}

    # Users

    @app.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
    def register_user(request: RegisterUserRequest) -> User:
        return ledger_service.register_user(request.phone, request.name, request.uid)

    @app.get("/users/{phone}", response_model=User, tags=["Users"])
    def get_user(phone: str) -> User:
        return ledger_service.get_user(phone)

    # Friends

    @app.get("/friends", response_model=list[Member], tags=["Friends"])
    def list_friends(identity: Identity = Depends(get_identity)) -> list[Member]:
        return ledger_service.list_friends(identity.phone)

    @app.post("/friends", status_code=status.HTTP_201_CREATED, tags=["Friends"])
    def add_friend(request: AddFriendRequest, identity: Identity = Depends(get_identity)):
        friendship_id = ledger_service.add_friend(identity, request.phone)
        return {"id": friendship_id}

    @app.delete("/friends/{phone}", status_code=status.HTTP_204_NO_CONTENT, tags=["Friends"])
    def remove_friend(phone: str, identity: Identity = Depends(get_identity)) -> None:
        ledger_service.remove_friend(identity, phone)

    @app.get("/friends/{phone}/expenses", response_model=FriendExpenseHistory, tags=["Friends"])
    def friend_history(phone: str, identity: Identity = Depends(get_identity)) -> FriendExpenseHistory:
        return ledger_service.get_friend_expense_history(identity.phone, phone)

    @app.get("/friends/{phone}/reminder", response_model=Reminder, tags=["Friends"])
    def friend_reminder(phone: str, identity: Identity = Depends(get_identity)) -> Reminder:
        return ledger_service.get_reminder(identity.phone, phone)

    # Expenses and settlements

    @app.post("/expenses", status_code=status.HTTP_201_CREATED, tags=["Expenses"])
    def add_expense(request: AddExpenseRequest, identity: Identity = Depends(get_identity)):
        expense_id = ledger_service.record_direct_expense(
            payer=request.payer or identity.phone,
            participants=request.participants,
            amount=request.amount,
            category=request.category,
            reason=request.reason,
            date=request.date,
        )
        return {"id": expense_id}

    @app.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Expenses"])
    def delete_expense(expense_id: UUID, identity: Identity = Depends(get_identity)) -> None:
        ledger_service.delete_expense(identity.phone, expense_id)

    @app.post("/settlements", status_code=status.HTTP_201_CREATED, tags=["Settlements"])
    def add_settlement(request: SettlementRequest, identity: Identity = Depends(get_identity)):
        settlement_id = ledger_service.record_settlement(
            from_phone=identity.phone,
            to_phone=request.to_phone,
            amount=request.amount,
            method=request.method,
            group_id=request.group_id,
            note=request.note,
        )
        return {"id": settlement_id}

    # Groups

    @app.get("/groups", response_model=list[Group], tags=["Groups"])
    def list_groups(identity: Identity = Depends(get_identity)) -> list[Group]:
        return ledger_service.list_groups(identity.phone)

    @app.post("/groups", status_code=status.HTTP_201_CREATED, tags=["Groups"])
    def create_group(request: CreateGroupRequest, identity: Identity = Depends(get_identity)):
        group_id = ledger_service.create_group(identity, request.name, request.members)
        return {"id": group_id}

    @app.get("/groups/{group_id}", response_model=GroupDetail, tags=["Groups"])
    def group_detail(group_id: UUID, identity: Identity = Depends(get_identity)) -> GroupDetail:
        return ledger_service.get_group_detail(group_id, identity.phone)

    @app.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Groups"])
    def delete_group(group_id: UUID, identity: Identity = Depends(get_identity)) -> None:
        ledger_service.delete_group(group_id, actor=identity.phone)

    @app.post("/groups/{group_id}/expenses", status_code=status.HTTP_201_CREATED, tags=["Groups"])
    def add_group_expense(
        group_id: UUID, request: AddGroupExpenseRequest, identity: Identity = Depends(get_identity)
    ):
        expense_id = ledger_service.record_group_expense(
            group_id=group_id,
            payer=request.payer or identity.phone,
            selected_members=request.selected_members,
            amount=request.amount,
            reason=request.reason,
            date=request.date,
            split_mode=request.split_mode,
            custom_splits=request.custom_splits,
            category=request.category,
        )
        return {"id": expense_id}

    @app.post("/groups/{group_id}/leave", status_code=status.HTTP_204_NO_CONTENT, tags=["Groups"])
    def leave_group(group_id: UUID, identity: Identity = Depends(get_identity)) -> None:
        ledger_service.leave_group(identity, group_id)

    # Summaries

    @app.get("/dashboard", response_model=DashboardSummary, tags=["Summary"])
    def dashboard(identity: Identity = Depends(get_identity)) -> DashboardSummary:
        return ledger_service.get_dashboard_summary(identity.phone)

    @app.get("/activity", response_model=list[ActivityEntry], tags=["Summary"])
    def activity(
        limit: Optional[int] = Query(default=None, ge=0), identity: Identity = Depends(get_identity)
    ) -> list[ActivityEntry]:
        return ledger_service.list_activity(identity.phone, limit)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
