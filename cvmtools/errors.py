"""Project-specific exception types."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class CvmToolsError(RuntimeError):
    """Base error for domain-level cvmtools failures."""

    def __init__(self, message: str = '', *, release_errors=None):
        super().__init__(message)
        self.release_errors: list[BaseException] = list(release_errors or [])


class ExternalCommandError(CvmToolsError):
    """An external program exited nonzero (or could not be executed)."""

    def __init__(
        self,
        program: str,
        arguments: Sequence[str],
        exit_code: int,
        stderr: str = '',
        stdout: str = '',
    ):
        self.program = program
        self.arguments = list(arguments)
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        cmd = ' '.join([program, *self.arguments])
        super().__init__(
            f'Command failed (code={exit_code}): {cmd}\n{stderr}'.strip()
        )


class ResourceNotReadyError(CvmToolsError):
    """A bounded readiness poll ran out of retries."""

    def __init__(self, path: str | Path, attempts: int = 0, desc: str = ''):
        self.path = str(path)
        self.attempts = attempts
        what = desc or 'resource'
        super().__init__(
            f'{what} not ready after {attempts} retries: {self.path}'
        )


class ReleaseError(CvmToolsError):
    """One or more release steps failed after the guarded work succeeded."""

    def __init__(self, errors: Sequence[BaseException]):
        self.errors = list(errors)
        detail = '; '.join(str(e) for e in self.errors)
        super().__init__(
            f'{len(self.errors)} release step(s) failed: {detail}',
            release_errors=self.errors,
        )


class MissingDependencyError(CvmToolsError):
    def __init__(self, missing: Sequence[str]):
        self.missing = list(missing)
        super().__init__(f'{", ".join(self.missing)} not installed')


class AttachmentError(CvmToolsError):
    """Attaching an image to an NBD device failed."""


class CustomizeError(CvmToolsError):
    """The mount/customize pipeline failed."""


class SidecarStartError(CvmToolsError):
    """The vTPM emulator could not be started."""


class ProcessStopError(CvmToolsError):
    """A pid-file tracked process could not be stopped."""


class ProvisionError(CvmToolsError):
    """Generating the vTPM storage root key failed."""


class LaunchError(CvmToolsError):
    """The hypervisor could not be launched."""


class SeedError(CvmToolsError):
    """Building the cloud-init seed image failed."""


class FetchError(CvmToolsError):
    """Downloading a base image failed."""
