from fastapi import Request

from ledger import AttemptLedger


def get_storage(request: Request):
    return request.app.state.storage


def get_ledger(request: Request) -> AttemptLedger:
    return request.app.state.ledger
