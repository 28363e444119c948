import logging
from typing import Optional

from fastapi import (
    Depends,
    FastAPI,
    File,
    Header,
    HTTPException,
    Query,
    Response,
    UploadFile,
)

from ai_adapter import GeminiAdapter
from aggregation import (
    category_breakdown,
    daily_series,
    dashboard,
    filter_by_type,
    filter_by_window,
    parse_type_filter,
)
from auth import SessionEvents, owner_from_credential, owner_from_token
from errors import (
    AdapterError,
    CategoryInUseError,
    FinanceError,
    NotAuthenticatedError,
    NotFoundError,
    OperationInProgressError,
    PersistenceError,
)
from database import init_db
from periods import Window, resolve_window
from persistence import RowStore
from reconciliation import GoalChange, ProposedTransaction
from schemas import (
    BudgetIn,
    CategoryIn,
    GoalIn,
    QuickAddIn,
    SessionIn,
    TransactionIn,
)
from services import Workspace, WorkspaceRegistry, import_slip, summarize_spending


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")

registry = WorkspaceRegistry(RowStore())
session_events = SessionEvents()
session_events.subscribe(registry.on_session_change)
_adapter: Optional[GeminiAdapter] = None

MAX_SLIP_BYTES = 10 * 1024 * 1024


@app.on_event("startup")
def startup_event():
    init_db()


def get_registry() -> WorkspaceRegistry:
    return registry


def get_session_events() -> SessionEvents:
    return session_events


def get_adapter() -> GeminiAdapter:
    global _adapter
    if _adapter is None:
        _adapter = GeminiAdapter()
    return _adapter


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def get_owner_id(authorization: Optional[str] = Header(default=None)) -> int:
    owner_id = owner_from_token(_bearer(authorization))
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return owner_id


def get_workspace(
    owner_id: int = Depends(get_owner_id),
    workspaces: WorkspaceRegistry = Depends(get_registry),
) -> Workspace:
    try:
        return workspaces.get(owner_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc


def _http_error(exc: FinanceError) -> HTTPException:
    status = 400
    if isinstance(exc, NotAuthenticatedError):
        status = 401
    elif isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, (CategoryInUseError, OperationInProgressError)):
        status = 409
    elif isinstance(exc, PersistenceError):
        status = 503
    elif isinstance(exc, AdapterError):
        status = 502
    return HTTPException(status_code=status, detail=str(exc))


def window_from_query(window: Optional[str]) -> Window:
    try:
        return resolve_window(window)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown window: {window}") from exc


def type_from_query(type_: Optional[str]):
    try:
        return parse_type_filter(type_)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown type: {type_}") from exc


def _proposal_payload(proposal: Optional[ProposedTransaction]) -> Optional[dict]:
    if proposal is None:
        return None
    return {
        "id": proposal.id,
        "goal_id": proposal.goal_id,
        "type": proposal.type.value,
        "category": proposal.category,
        "amount": str(proposal.amount),
        "note": proposal.note,
    }


def _change_payload(change: GoalChange) -> dict:
    return {
        "goal": change.goal,
        "proposal": _proposal_payload(change.proposal),
        "transaction": change.transaction,
    }


def _deleted(workspace_call, entity_id: int) -> dict:
    try:
        workspace_call(entity_id)
    except NotFoundError as exc:
        # already gone remotely; the local cache has been pruned
        return {"deleted": False, "warning": str(exc)}
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return {"deleted": True}


@app.post("/session")
def sign_in(data: SessionIn, events: SessionEvents = Depends(get_session_events)):
    owner_id = owner_from_credential(data.credential)
    if owner_id is None:
        raise HTTPException(status_code=401, detail="Invalid or expired credential")
    return {"token": events.sign_in(owner_id)}


@app.delete("/session", status_code=204)
def sign_out(
    owner_id: int = Depends(get_owner_id),
    events: SessionEvents = Depends(get_session_events),
):
    events.sign_out(owner_id)
    return Response(status_code=204)


@app.get("/transactions")
def list_transactions(
    window: Optional[str] = None,
    type_: Optional[str] = Query(default=None, alias="type"),
    ws: Workspace = Depends(get_workspace),
):
    period = window_from_query(window)
    txn_type = type_from_query(type_)
    return filter_by_type(filter_by_window(ws.transactions.list(), period), txn_type)


@app.post("/transactions", status_code=201)
def create_transaction(data: TransactionIn, ws: Workspace = Depends(get_workspace)):
    try:
        return ws.transactions.create(data)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int, data: TransactionIn, ws: Workspace = Depends(get_workspace)
):
    try:
        existing = ws.transactions.get(transaction_id)
        changed = existing.model_copy(
            update={
                "type": data.type,
                "category": data.category,
                "amount": data.amount,
                "note": data.note,
                "created_at": data.created_at or existing.created_at,
            }
        )
        return ws.transactions.update(changed)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.delete("/transactions/{transaction_id}")
def delete_transaction(transaction_id: int, ws: Workspace = Depends(get_workspace)):
    return _deleted(ws.transactions.delete, transaction_id)


@app.get("/categories")
def list_categories(ws: Workspace = Depends(get_workspace)):
    return ws.categories.list()


@app.post("/categories", status_code=201)
def create_category(data: CategoryIn, ws: Workspace = Depends(get_workspace)):
    try:
        return ws.categories.create(data)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.post("/categories/defaults")
def add_default_categories(ws: Workspace = Depends(get_workspace)):
    try:
        return ws.categories.add_defaults()
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.put("/categories/{category_id}")
def rename_category(
    category_id: int, data: CategoryIn, ws: Workspace = Depends(get_workspace)
):
    try:
        existing = ws.categories.get(category_id)
        return ws.categories.update(
            existing.model_copy(update={"name": data.name, "type": data.type})
        )
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, ws: Workspace = Depends(get_workspace)):
    return _deleted(ws.categories.delete, category_id)


@app.get("/budgets")
def list_budgets(ws: Workspace = Depends(get_workspace)):
    return ws.budgets.list()


@app.put("/budgets")
def upsert_budget(data: BudgetIn, ws: Workspace = Depends(get_workspace)):
    try:
        return ws.budgets.upsert(data)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, ws: Workspace = Depends(get_workspace)):
    return _deleted(ws.budgets.delete, budget_id)


@app.get("/goals")
def list_goals(ws: Workspace = Depends(get_workspace)):
    return ws.goals.list()


@app.post("/goals", status_code=201)
def create_goal(data: GoalIn, ws: Workspace = Depends(get_workspace)):
    try:
        return _change_payload(ws.reconciliation.create_goal(data))
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.put("/goals/{goal_id}")
def update_goal(goal_id: int, data: GoalIn, ws: Workspace = Depends(get_workspace)):
    try:
        existing = ws.goals.get(goal_id)
        changed = existing.model_copy(
            update={
                "name": data.name,
                "type": data.type,
                "target_amount": data.target_amount,
                "current_amount": data.current_amount,
                "deadline": data.deadline,
            }
        )
        return _change_payload(ws.reconciliation.update_goal(changed))
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.post("/goals/{goal_id}/quick-add")
def quick_add_goal(
    goal_id: int, data: QuickAddIn, ws: Workspace = Depends(get_workspace)
):
    try:
        return _change_payload(ws.reconciliation.quick_add(goal_id, data.amount))
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.get("/goals/{goal_id}/refund-preview")
def goal_refund_preview(goal_id: int, ws: Workspace = Depends(get_workspace)):
    try:
        proposal = ws.reconciliation.preview_goal_deletion(goal_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return {"refund": _proposal_payload(proposal)}


@app.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: int, refund: bool = False, ws: Workspace = Depends(get_workspace)
):
    try:
        change = ws.reconciliation.delete_goal(goal_id, refund=refund)
    except NotFoundError as exc:
        return {"deleted": False, "warning": str(exc), "transaction": None}
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return {"deleted": True, "transaction": change.transaction}


@app.get("/proposals")
def list_proposals(ws: Workspace = Depends(get_workspace)):
    return [_proposal_payload(p) for p in ws.reconciliation.pending()]


@app.post("/proposals/{proposal_id}/confirm", status_code=201)
def confirm_proposal(proposal_id: str, ws: Workspace = Depends(get_workspace)):
    try:
        return ws.reconciliation.confirm(proposal_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.post("/proposals/{proposal_id}/decline", status_code=204)
def decline_proposal(proposal_id: str, ws: Workspace = Depends(get_workspace)):
    try:
        ws.reconciliation.decline(proposal_id)
    except FinanceError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/dashboard")
def get_dashboard(
    window: Optional[str] = None,
    type_: Optional[str] = Query(default=None, alias="type"),
    ws: Workspace = Depends(get_workspace),
):
    return dashboard(
        ws.transactions.list(),
        ws.budgets.list(),
        window_from_query(window),
        type_from_query(type_),
    )


@app.get("/reports/categories")
def report_categories(window: Optional[str] = None, ws: Workspace = Depends(get_workspace)):
    period = window_from_query(window)
    return category_breakdown(filter_by_window(ws.transactions.list(), period))


@app.get("/reports/daily")
def report_daily(window: Optional[str] = None, ws: Workspace = Depends(get_workspace)):
    period = window_from_query(window)
    return daily_series(filter_by_window(ws.transactions.list(), period))


@app.post("/ai/slip")
def analyze_slip(
    file: UploadFile = File(...),
    ws: Workspace = Depends(get_workspace),
    adapter: GeminiAdapter = Depends(get_adapter),
):
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Slip must be an image")
    image = file.file.read()
    if len(image) > MAX_SLIP_BYTES:
        raise HTTPException(status_code=400, detail="Slip image is too large")
    try:
        return import_slip(adapter, ws, image, file.content_type)
    except FinanceError as exc:
        raise _http_error(exc) from exc


@app.post("/ai/summary")
def analyze_spending(
    window: Optional[str] = None,
    ws: Workspace = Depends(get_workspace),
    adapter: GeminiAdapter = Depends(get_adapter),
):
    period = window_from_query(window)
    try:
        return summarize_spending(
            adapter, filter_by_window(ws.transactions.list(), period)
        )
    except FinanceError as exc:
        raise _http_error(exc) from exc


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
