"""System endpoints: executable status, filesystem browser and SSH hosts."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from rsyncweb.browse import list_directory, parse_ssh_config
from rsyncweb.config import ServerConfig
from rsyncweb.core.errors import NotFoundError, ValidationError
from rsyncweb.dashboard.app import get_config, get_registry
from rsyncweb.jobs.probe import probe_executable
from rsyncweb.jobs.registry import JobRegistry

router = APIRouter(prefix="/api", tags=["System"])


class StatusResponse(BaseModel):
    """Availability of the synchronization tool and server load."""

    rsync_available: bool
    rsync_path: str | None
    rsync_version: str | None
    work_dir: str
    running_jobs: int


class FileEntryModel(BaseModel):
    name: str
    path: str
    is_dir: bool
    size: int = 0


class BrowseResponse(BaseModel):
    current_path: str
    full_path: str
    entries: list[FileEntryModel]


class SSHHostModel(BaseModel):
    name: str
    hostname: str = ""
    user: str = ""
    port: str = ""


@router.get("/status", response_model=StatusResponse)
async def get_status(
    request: Request,
    config: ServerConfig = Depends(get_config),
    registry: JobRegistry = Depends(get_registry),
) -> StatusResponse:
    """Probe the synchronization executable.

    The result also refreshes the availability check used by ``/api/run``,
    so installing the tool does not require a server restart.
    """
    status = await probe_executable(config.executable)
    request.app.state.executable_status = status
    return StatusResponse(
        rsync_available=status.available,
        rsync_path=status.path,
        rsync_version=status.version,
        work_dir=str(config.work_dir),
        running_jobs=registry.running_count(),
    )


@router.get("/browse", response_model=BrowseResponse)
async def browse(
    path: str = ".",
    config: ServerConfig = Depends(get_config),
) -> BrowseResponse:
    """List a directory below the working directory.

    Raises:
        HTTPException: 400 if the path escapes the working directory,
            404 if it is not a directory
    """
    try:
        listing = list_directory(config.work_dir, path)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return BrowseResponse.model_validate(listing.to_dict())


@router.get("/ssh-hosts", response_model=list[SSHHostModel])
async def ssh_hosts(config: ServerConfig = Depends(get_config)) -> list[SSHHostModel]:
    """Hosts configured in the SSH client config, wildcards excluded."""
    return [
        SSHHostModel(name=h.name, hostname=h.hostname, user=h.user, port=h.port)
        for h in parse_ssh_config(config.ssh_config_path)
    ]
