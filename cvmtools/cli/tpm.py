"""CLI commands for the vTPM sidecar lifecycle."""

from __future__ import annotations

import scriptconfig as scfg

from ..host import TPM_SETUP_CMDS, TPM_START_CMDS, check_dependencies
from ..tpm import (
    SidecarPaths,
    destroy_vtpm,
    setup_vtpm,
    start_vtpm,
    stop_vtpm,
    vtpm_status,
)
from ._common import _BaseCommand, _load_cfg


class TpmStartCLI(_BaseCommand):
    """Start the vTPM emulator in the background."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        check_dependencies(TPM_START_CMDS)
        print('Starting vTPM')
        pid = start_vtpm(
            SidecarPaths.from_config(cfg),
            server=False,
            retries=cfg.tpm.poll_retries,
            interval=cfg.tpm.poll_interval,
        )
        print(f'vTPM started, pid: {pid}')
        return 0


class TpmSetupCLI(_BaseCommand):
    """Initialize vTPM state and create the storage root key (SRK)."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        check_dependencies(TPM_SETUP_CMDS)
        print('Creating SRK')
        setup_vtpm(
            SidecarPaths.from_config(cfg),
            srk_ctx=cfg.tpm.srk_ctx,
            srk_pub=cfg.tpm.srk_pub,
            retries=cfg.tpm.poll_retries,
            interval=cfg.tpm.poll_interval,
        )
        return 0


class TpmKillCLI(_BaseCommand):
    """Stop the running vTPM emulator."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print('Stopping vTPM')
        stop_vtpm(SidecarPaths.from_config(cfg))
        return 0


class TpmDestroyCLI(_BaseCommand):
    """Stop the vTPM if needed and delete all of its persisted state."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print('Destroying vTPM state')
        destroy_vtpm(SidecarPaths.from_config(cfg))
        return 0


class TpmStatusCLI(_BaseCommand):
    """Report whether the vTPM is set up and running."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print(vtpm_status(SidecarPaths.from_config(cfg)).render())
        return 0


class TpmModalCLI(scfg.ModalCLI):
    """Manage the vTPM."""

    start = TpmStartCLI
    setup = TpmSetupCLI
    kill = TpmKillCLI
    destroy = TpmDestroyCLI
    status = TpmStatusCLI
