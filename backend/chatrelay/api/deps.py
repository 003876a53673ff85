from collections.abc import Generator
from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlmodel import Session

from chatrelay.core.db import engine
from chatrelay.schemas import GuestCredential
from chatrelay.services.container import AppServices
from chatrelay.services.credentials import CredentialContext


def get_db() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def get_services(request: Request) -> AppServices:
    return request.app.state.services


def get_identity(request: Request) -> Optional[str]:
    return getattr(request.state, "identity", None)


def get_request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


SessionDep = Annotated[Session, Depends(get_db)]
ServicesDep = Annotated[AppServices, Depends(get_services)]
IdentityDep = Annotated[Optional[str], Depends(get_identity)]
RequestIdDep = Annotated[Optional[str], Depends(get_request_id)]


def credential_context(identity: Optional[str], guest: Optional[GuestCredential]) -> CredentialContext:
    return CredentialContext(
        identity=identity,
        guest_credential=guest.to_credential() if guest is not None else None,
    )
