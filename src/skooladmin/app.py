from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from skooladmin.config.logging import configure_logging
from skooladmin.config.settings import settings
from skooladmin.core.errors import NotFound, RemoteError, SkoolAdminError, ValidationError
from skooladmin.services.dashboard_service import student_dashboard, student_summary
from skooladmin.state.query_client import QueryClient


class MutationPayload(BaseModel):
    values: Dict[str, Any] = Field(default_factory=dict)


def _to_http(exc: SkoolAdminError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, RemoteError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _dump(data: Any) -> Any:
    if isinstance(data, list):
        return [_dump(item) for item in data]
    if hasattr(data, "to_row"):
        return data.to_row()
    return data


def create_app(client: Optional[QueryClient] = None) -> FastAPI:
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if client is None:
            app.state.client = QueryClient.from_settings()
        try:
            yield
        finally:
            await app.state.client.close()

    app = FastAPI(title="SkoolAdmin API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if client is not None:
        app.state.client = client

    def get_client(request: Request) -> QueryClient:
        return request.app.state.client

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/query/{table}/{operation}")
    async def run_query(
        table: str,
        operation: str,
        param: List[str] = Query(default=[]),
        qc: QueryClient = Depends(get_client),
    ) -> Dict[str, Any]:
        try:
            observer = qc.query(table, operation, *param)
            data = await observer.fetch()
        except SkoolAdminError as exc:
            raise _to_http(exc) from exc
        return {"key": str(observer.key), "status": observer.status.value, "data": _dump(data)}

    @app.get("/students/{student_id}/summary")
    async def get_student_summary(student_id: str, qc: QueryClient = Depends(get_client)) -> Dict[str, Any]:
        try:
            student = await qc.fetch("students", "detail", student_id)
            summary = await student_summary(qc, student)
        except SkoolAdminError as exc:
            raise _to_http(exc) from exc
        return summary.to_dict()

    @app.get("/dashboard/student/{user_id}")
    async def get_student_dashboard(user_id: str, qc: QueryClient = Depends(get_client)) -> Dict[str, Any]:
        try:
            dashboard = await student_dashboard(qc, user_id)
        except SkoolAdminError as exc:
            raise _to_http(exc) from exc
        return dashboard.to_dict()

    @app.post("/{table}", status_code=status.HTTP_201_CREATED)
    async def insert_row(table: str, payload: MutationPayload, qc: QueryClient = Depends(get_client)) -> Dict:
        try:
            created = await qc.mutate(table, "insert", payload.values)
        except SkoolAdminError as exc:
            raise _to_http(exc) from exc
        return _dump(created)

    @app.patch("/{table}/{row_id}")
    async def update_row(
        table: str,
        row_id: str,
        payload: MutationPayload,
        qc: QueryClient = Depends(get_client),
    ) -> Dict:
        try:
            updated = await qc.mutate(table, "update", payload.values, id=row_id)
        except SkoolAdminError as exc:
            raise _to_http(exc) from exc
        return _dump(updated)

    @app.delete("/{table}/{row_id}")
    async def delete_row(table: str, row_id: str, qc: QueryClient = Depends(get_client)) -> Dict[str, str]:
        try:
            await qc.mutate(table, "delete", id=row_id)
        except SkoolAdminError as exc:
            raise _to_http(exc) from exc
        return {"status": "deleted"}

    return app
