from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, status

from .models import (
    EvalRequest,
    EvaluationResponse,
    GuestEvaluator,
    MemoRequest,
    Promise,
    PromiseCreateRequest,
    PromiseCycle,
    PromiseCycleRequest,
    PromiseCycleUpdateRequest,
    PromiseDetail,
    PromiseList,
    PromiseSummary,
    PromiseUpdateRequest,
    RegisteredEvaluator,
    ShareResponse,
    TempEvalRequest,
)
from .service import EvaluationWorkflow, PromiseBook, ShareTokenIssuer

router = APIRouter(prefix="/promise", tags=["Promises"])


def current_user_id(x_user_id: int = Header(..., gt=0, description="Caller id resolved by the auth gateway")) -> int:
    return x_user_id


def get_promise_book(request: Request) -> PromiseBook:
    return request.app.state.promise_book


def get_share_issuer(request: Request) -> ShareTokenIssuer:
    return request.app.state.share_issuer


def get_evaluation_workflow(request: Request) -> EvaluationWorkflow:
    return request.app.state.evaluation_workflow


@router.post("", response_model=Promise, status_code=status.HTTP_201_CREATED)
def create_promise(
    request: PromiseCreateRequest,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> Promise:
    return book.create(user_id, request)


@router.get("", response_model=PromiseList)
def list_promises(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> PromiseList:
    return book.list_promises(user_id, start, end)


@router.get("/share/{token}", response_model=PromiseSummary)
def get_promise_by_share_token(token: str, issuer: ShareTokenIssuer = Depends(get_share_issuer)) -> PromiseSummary:
    return issuer.lookup(token)


@router.post("/share/{share_id}/eval", response_model=EvaluationResponse)
def evaluate_share(
    share_id: int,
    request: EvalRequest,
    workflow: EvaluationWorkflow = Depends(get_evaluation_workflow),
) -> EvaluationResponse:
    return workflow.submit(share_id, RegisteredEvaluator(user_id=request.user_id), request)


@router.post("/share/{share_id}/eval/temp", response_model=EvaluationResponse)
def evaluate_share_as_guest(
    share_id: int,
    request: TempEvalRequest,
    workflow: EvaluationWorkflow = Depends(get_evaluation_workflow),
) -> EvaluationResponse:
    evaluator = GuestEvaluator(guest_id=request.temp_id, display_name=request.temp_name)
    return workflow.submit(share_id, evaluator, request)


@router.get("/cycle/{cycle_id}", response_model=PromiseCycle)
def get_promise_cycle(
    cycle_id: int,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> PromiseCycle:
    return book.get_cycle(cycle_id, user_id)


@router.put("/cycle/{cycle_id}", response_model=PromiseCycle)
def update_promise_cycle(
    cycle_id: int,
    request: PromiseCycleUpdateRequest,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> PromiseCycle:
    return book.update_cycle(cycle_id, user_id, request)


@router.delete("/cycle/{cycle_id}")
def delete_promise_cycle(
    cycle_id: int,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
):
    book.delete_cycle(cycle_id, user_id)
    return {"deleted": True, "cycle_id": cycle_id}


@router.get("/{promise_id}", response_model=PromiseDetail)
def get_promise(
    promise_id: int,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> PromiseDetail:
    return book.get_detail(promise_id, user_id)


@router.put("/{promise_id}", response_model=Promise)
def update_promise(
    promise_id: int,
    request: PromiseUpdateRequest,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> Promise:
    return book.update(promise_id, user_id, request)


@router.post("/{promise_id}/memo", response_model=Promise)
def append_promise_memo(
    promise_id: int,
    request: MemoRequest,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> Promise:
    return book.append_memo(promise_id, user_id, request.memo)


@router.delete("/{promise_id}")
def delete_promise(
    promise_id: int,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
):
    book.delete(promise_id, user_id)
    return {"deleted": True, "promise_id": promise_id}


@router.post("/{promise_id}/share", response_model=ShareResponse)
def share_promise(
    promise_id: int,
    user_id: int = Depends(current_user_id),
    issuer: ShareTokenIssuer = Depends(get_share_issuer),
) -> ShareResponse:
    return issuer.issue(promise_id, user_id)


@router.post("/{promise_id}/cycle", response_model=PromiseCycle, status_code=status.HTTP_201_CREATED)
def add_promise_cycle(
    promise_id: int,
    request: PromiseCycleRequest,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> PromiseCycle:
    return book.add_cycle(promise_id, user_id, request)


@router.get("/{promise_id}/cycle", response_model=list[PromiseCycle])
def list_promise_cycles(
    promise_id: int,
    user_id: int = Depends(current_user_id),
    book: PromiseBook = Depends(get_promise_book),
) -> list[PromiseCycle]:
    return book.list_cycles(promise_id, user_id)
