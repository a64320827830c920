"""CLI commands for launching and stopping the QEMU VM."""

from __future__ import annotations

import scriptconfig as scfg

from ..cloudinit import create_seed_image
from ..host import VM_START_CMDS, check_dependencies
from ..vm import kill_vm, launch_vm, validate_launch_inputs, vm_status
from ._common import _BaseCommand, _load_cfg, log


class VMStartCLI(_BaseCommand):
    """Build the cloud-init seed and boot IMAGE with the vTPM attached."""

    image = scfg.Value('', position=1, help='Disk image to boot (snapshot mode).')
    seed = scfg.Value('', help='Seed image path (default: vm.seed_image).')
    ssh_import_id = scfg.Value(
        '',
        help='Comma separated ssh-import-id sources, e.g. gh:octocat '
        '(default: cloud_init.ssh_import_ids).',
    )

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        if not args.image:
            raise RuntimeError('An IMAGE argument is required.')
        check_dependencies(VM_START_CMDS)
        validate_launch_inputs(cfg, args.image)
        ids = _parse_ids(args.ssh_import_id) or list(cfg.cloud_init.ssh_import_ids)
        if not ids:
            log.warning(
                'No ssh_import_id given; the guest will have no SSH login. '
                'Pass --ssh_import_id gh:USER or set cloud_init.ssh_import_ids.'
            )
        seed = args.seed or cfg.vm.seed_image
        print('Creating cloud-init config drive')
        create_seed_image(seed, ids, work_dir=cfg.paths.work_dir or None)
        print(f'Starting VM: {args.image}')
        launch_vm(cfg, args.image, seed)
        print('connect to QMP with:')
        print(f'    qmp-shell {cfg.vm.qmp_socket}')
        return 0


class VMKillCLI(_BaseCommand):
    """Terminate the running VM."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        cfg = _load_cfg(args.config)
        print('Stopping VM')
        kill_vm(cfg)
        return 0


class VMStatusCLI(_BaseCommand):
    """Report whether the VM pid file points at a live process."""

    @classmethod
    def main(cls, argv=True, **kwargs):
        args = cls.cli(argv=argv, data=kwargs)
        print(vm_status(_load_cfg(args.config)))
        return 0


class VMModalCLI(scfg.ModalCLI):
    """Manage VMs."""

    start = VMStartCLI
    kill = VMKillCLI
    status = VMStatusCLI


def _parse_ids(raw: str) -> list[str]:
    return [part.strip() for part in (raw or '').split(',') if part.strip()]
