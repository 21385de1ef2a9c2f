from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from endpoints.dependencies import get_registry, to_http_exception
from models.code_models import (AccessCode, CodeStatus, GenerateBulkRequest, GenerateOneRequest, ImportCodesRequest,
                                RemoveCodesRequest, SetNameRequest, SetNamesBulkRequest, SetStatusRequest,
                                ValidationResult)
from service.code_csv_service import parse_codes_csv
from service.code_registry_service import CodeRegistry
from service.exceptions import AccessCodeError

router = APIRouter(prefix="/api/codes", tags=["Access Codes"])


@router.get("", response_model=List[AccessCode])
async def list_codes(status: Optional[CodeStatus] = None, registry: CodeRegistry = Depends(get_registry)):
    return registry.list_codes(status)


@router.post("", status_code=201)
async def generate_one(request: GenerateOneRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        code = await registry.generate_one(request.name)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return registry.find(code)


@router.post("/bulk", status_code=201)
async def generate_bulk(request: GenerateBulkRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        codes = await registry.generate_bulk(request.count, request.names)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {"codes": codes, "items": [registry.find(code) for code in codes]}


@router.post("/import")
async def import_codes(request: ImportCodesRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        return await registry.import_many(request.items)
    except AccessCodeError as e:
        raise to_http_exception(e)


@router.post("/upload")
async def upload_codes(request: Request, registry: CodeRegistry = Depends(get_registry)):
    """Import a CSV body with a code column and an optional name column"""
    try:
        text = (await request.body()).decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Upload must be UTF-8 text")

    items, skipped = parse_codes_csv(text)
    if not items:
        raise HTTPException(status_code=400, detail="No access codes found in upload")
    try:
        summary = await registry.import_many(items)
    except AccessCodeError as e:
        raise to_http_exception(e)
    summary["skipped"] += skipped
    return summary


@router.get("/export")
async def export_codes(codes: Optional[List[str]] = Query(None), include_names: bool = True,
                       registry: CodeRegistry = Depends(get_registry)):
    content = registry.export_csv(codes, include_names=include_names)
    return PlainTextResponse(content, media_type="text/csv",
                             headers={"Content-Disposition": 'attachment; filename="access-codes.csv"'})


@router.get("/validate", response_model=ValidationResult, response_model_exclude_none=True)
async def validate_code(code: str, request: Request, registry: CodeRegistry = Depends(get_registry)):
    try:
        result = await registry.validate(code)
    except AccessCodeError as e:
        raise to_http_exception(e)

    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    await registry.record_attempt(code, result, ip_address, request.headers.get("user-agent"))
    return result


@router.patch("/names")
async def set_names_bulk(request: SetNamesBulkRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        renamed = await registry.set_names_bulk(request.codes, request.names, request.overwrite)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {"renamed": renamed}


@router.post("/delete")
async def remove_codes(request: RemoveCodesRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        deleted = await registry.remove_many(request.codes)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {"deleted": deleted}


@router.get("/{code}", response_model=AccessCode)
async def get_code(code: str, registry: CodeRegistry = Depends(get_registry)):
    item = registry.find(code)
    if item is None:
        raise HTTPException(status_code=404, detail="Access code not found")
    return item


@router.patch("/{code}/name")
async def set_name(code: str, request: SetNameRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        await registry.set_name(code, request.name)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {"message": "Name updated"}


@router.patch("/{code}/status")
async def set_status(code: str, request: SetStatusRequest, registry: CodeRegistry = Depends(get_registry)):
    try:
        await registry.set_status(code, request.status)
    except AccessCodeError as e:
        raise to_http_exception(e)
    return {"message": f"Status set to {request.status.value}"}
