"""Gateway Router - Encrypted upload and decrypted download

Endpoints:
- POST /upload: multipart form, field "file"; stored encrypted under its filename -> 201
- GET /file/{name}: decrypted object streamed back -> 200

Only the status code carries the outcome; bodies of error responses are empty.
Failure mapping: 400 bad form, 404 unknown object, 500 integrity/backend failure.
"""

import os

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import ClientDisconnect
from starlette.types import Receive, Scope, Send

from src.gateway.cancellation import cancel_on_disconnect
from src.gateway.errors import ClientInputError, GatewayError, IntegrityError, ObjectNotFound
from src.gateway.service import DownloadStream, FileGateway
from src.utils.metrics import record_download, record_upload, track_duration

router = APIRouter()
logger = structlog.get_logger()


class DownloadResponse(StreamingResponse):
    """Streaming response that releases the backend object on every exit path

    The body generator may never start (client gone before the status line)
    or stay suspended at a yield (client gone mid-body), so the backend
    object is also released here.
    """

    def __init__(self, download: DownloadStream):
        super().__init__(download.chunks(), media_type="application/octet-stream")
        self.download = download

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, OSError):
            logger.info("Client disconnected during download", name=self.download.name)
            raise
        finally:
            await self.body_iterator.aclose()
            self.download.close()


def get_gateway(request: Request) -> FileGateway:
    return request.app.state.gateway


async def _parse_form(request: Request, max_part_size: int) -> FormData:
    try:
        return await request.form(max_part_size=max_part_size)
    except (MultiPartException, StarletteHTTPException, ValueError) as e:
        raise ClientInputError(f"malformed multipart body: {e}") from e


def _declared_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    # Spooled to a seekable temp file by the form parser
    upload.file.seek(0, os.SEEK_END)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


@router.post("/upload", status_code=201)
@track_duration("upload")
async def upload_file(request: Request, gateway: FileGateway = Depends(get_gateway)):
    """Encrypt the uploaded file and store it under its filename

    Returns:
        Empty 201 on success
    """
    form = None
    filename = None
    try:
        form = await _parse_form(request, gateway.settings.max_form_part_size)
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise ClientInputError("form has no 'file' field")
        if not upload.filename:
            raise ClientInputError("file field has no filename")

        filename = upload.filename
        size = _declared_size(upload)

        async with cancel_on_disconnect(request) as cancel_event:
            info = await gateway.upload(filename, upload.file, size, cancel_event)

        logger.info("Uploaded file", name=filename, size=size, stored_size=info.size)
        record_upload(201, size)
        return Response(status_code=201)

    except ClientInputError as e:
        logger.warning("Upload rejected", error=str(e))
        record_upload(400)
        return Response(status_code=400)
    except GatewayError as e:
        logger.error("Upload failed", name=filename, error_type=type(e).__name__, error=str(e))
        record_upload(e.status_code)
        return Response(status_code=e.status_code)
    except Exception as e:
        logger.error("Upload error", name=filename, error_type=type(e).__name__, error=str(e))
        record_upload(500)
        return Response(status_code=500)
    finally:
        if form is not None:
            await form.close()


@router.get("/file/{name:path}")
async def download_file(name: str, gateway: FileGateway = Depends(get_gateway)):
    """Stream the decrypted object back

    The first frame is authenticated before the response starts, so a wrong
    key or a damaged header still gets a clean 500.
    """
    try:
        download = await gateway.open_download(name)
    except ObjectNotFound:
        logger.info("File not found", name=name)
        record_download(404)
        return Response(status_code=404)
    except IntegrityError as e:
        logger.error("Integrity check failed", name=name, error=str(e))
        record_download(500)
        return Response(status_code=500)
    except GatewayError as e:
        logger.error("Download failed", name=name, error_type=type(e).__name__, error=str(e))
        record_download(e.status_code)
        return Response(status_code=e.status_code)
    except Exception as e:
        logger.error("Download error", name=name, error_type=type(e).__name__, error=str(e))
        record_download(500)
        return Response(status_code=500)

    record_download(200)
    return DownloadResponse(download)
