"""CLI entry points for kvm-install-vm."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from kvm_install_vm.config import builtin_config, config_to_dict, load_config, save_config
from kvm_install_vm.constants import DEFAULT_DISTRO, SYSTEM_LIBVIRT_URI, USER_CONFIG_PATH
from kvm_install_vm.exceptions import IntegrityError, ManagerError
from kvm_install_vm.images import ArtifactStore
from kvm_install_vm.inventory import Inventory, format_table, select
from kvm_install_vm.models import Config, ProvisioningRequest
from kvm_install_vm.provision import Provisioner
from kvm_install_vm.utils import format_size, log, set_verbose


def _connect(uri: str):
    """Open the libvirt connection. Imported lazily so offline commands work without libvirt."""
    from kvm_install_vm.hypervisor import Hypervisor

    hypervisor = Hypervisor(uri)
    hypervisor.connect()
    return hypervisor


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvm-install-vm",
        description="Provision and tear down cloud-init VMs on libvirt/KVM",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML config file")
    parser.add_argument("--connect", metavar="URI", default=None, help=f"libvirt connection URI, e.g. {SYSTEM_LIBVIRT_URI}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    create = sub.add_parser("create", help="Create and start a new VM")
    create.add_argument("-n", "--name", required=True, help="VM name (also the guest hostname)")
    create.add_argument("-t", "--distro", default=None, help=f"Distribution id (default: {DEFAULT_DISTRO})")
    create.add_argument("-c", "--cpus", type=int, default=None, help="Number of vCPUs")
    create.add_argument("-m", "--memory", type=int, default=None, help="Memory in MiB")
    create.add_argument("-d", "--disk", type=int, default=None, help="Disk size in GiB")
    create.add_argument("--graphics", action="store_true", help="Attach a VNC display")
    create.add_argument("--dry-run", action="store_true", help="Show what would be done and exit")
    create.add_argument("-k", "--ssh-key", type=Path, default=None, help="SSH public key to inject")
    create.add_argument("--user-data", type=Path, default=None, help="Extra cloud-init user data file")

    destroy = sub.add_parser("destroy", help="Stop and undefine a VM")
    destroy.add_argument("name", help="VM name")
    destroy.add_argument("--remove-disk", action="store_true", help="Also delete the VM's disk files")

    listing = sub.add_parser("list", help="List VMs")
    listing.add_argument("--all", action="store_true", help="Show all VMs (default)")
    listing.add_argument("--running", action="store_true", help="Show running VMs only")
    listing.add_argument("--inactive", action="store_true", help="Show inactive VMs only")

    sub.add_parser("distros", help="List configured distributions")

    images = sub.add_parser("images", help="List, verify or delete cached base images")
    images.add_argument("--verify", action="store_true", help="Run qemu-img check on every cached image")
    images.add_argument("--delete", metavar="DISTRO", default=None, help="Delete the cached image of DISTRO")

    config_cmd = sub.add_parser("config", help="Show or initialise the configuration")
    config_sub = config_cmd.add_subparsers(dest="config_command", metavar="ACTION")
    config_sub.required = True
    config_sub.add_parser("show", help="Print the resolved configuration")
    init = config_sub.add_parser("init", help="Write the built-in defaults to a config file")
    init.add_argument("--path", type=Path, default=None, help=f"Target file (default: {USER_CONFIG_PATH})")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")
    return parser


def cmd_create(args: argparse.Namespace, config: Config) -> int:
    defaults = config.defaults
    request = ProvisioningRequest(
        vm_name=args.name,
        vcpu_count=args.cpus if args.cpus is not None else defaults.vcpus,
        memory_mib=args.memory if args.memory is not None else defaults.memory_mb,
        disk_size_gib=args.disk if args.disk is not None else defaults.disk_size_gb,
        distro_id=args.distro or DEFAULT_DISTRO,
        graphics_enabled=args.graphics,
        dry_run=args.dry_run,
    )
    if request.dry_run:
        Provisioner(config, None).create(request, ssh_key_path=args.ssh_key, user_data_path=args.user_data)
        log("INFO", "Dry-run complete (nothing was changed)")
        return 0

    hypervisor = _connect(defaults.libvirt_uri)
    try:
        Provisioner(config, hypervisor).create(request, ssh_key_path=args.ssh_key, user_data_path=args.user_data)
    finally:
        hypervisor.close()
    return 0


def cmd_destroy(args: argparse.Namespace, config: Config) -> int:
    hypervisor = _connect(config.defaults.libvirt_uri)
    try:
        result = Provisioner(config, hypervisor).destroy(args.name, remove_disk=args.remove_disk)
    finally:
        hypervisor.close()
    if result.failed:
        return 1
    log("SUCCESS", f"Destroyed {args.name}")
    return 0


def cmd_list(args: argparse.Namespace, config: Config) -> int:
    hypervisor = _connect(config.defaults.libvirt_uri)
    try:
        records = Inventory(hypervisor).list()
    finally:
        hypervisor.close()
    print(format_table(select(records, running=args.running, inactive=args.inactive, show_all=args.all)))
    return 0


def cmd_distros(args: argparse.Namespace, config: Config) -> int:
    if not config.distros:
        log("WARN", "No distributions configured")
        return 0
    width = max(len(key) for key in config.distros)
    for key in sorted(config.distros):
        profile = config.distros[key]
        print(f"  {key:<{width}}  {profile.os_variant}  (user={profile.login_user}, image={profile.qcow_filename})")
    return 0


def cmd_images(args: argparse.Namespace, config: Config) -> int:
    store = ArtifactStore(config.defaults.image_dir)
    if args.delete:
        store.delete(config.get_distro(args.delete))
        return 0

    images = store.list_images()
    if not images:
        log("INFO", f"No cached images in {store.image_dir}")
        return 0
    failures = 0
    for path in images:
        print(f"  {path.name}  {format_size(path.stat().st_size)}")
        if args.verify:
            try:
                store.verify(path)
            except IntegrityError as exc:
                log("ERROR", str(exc))
                failures += 1
    return 1 if failures else 0


def cmd_config(args: argparse.Namespace, config: Config) -> int:
    if args.config_command == "show":
        data = config_to_dict(config)
        if data["defaults"].get("password"):
            data["defaults"]["password"] = "********"
        print(yaml.safe_dump(data, sort_keys=False, default_flow_style=False), end="")
        return 0

    target = args.path or USER_CONFIG_PATH
    if target.exists() and not args.force:
        log("ERROR", f"{target} already exists (use --force to overwrite)")
        return 1
    save_config(builtin_config(), target)
    log("SUCCESS", f"Wrote default configuration to {target}")
    return 0


_COMMANDS = {
    "create": cmd_create,
    "destroy": cmd_destroy,
    "list": cmd_list,
    "distros": cmd_distros,
    "images": cmd_images,
    "config": cmd_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        set_verbose(True)

    try:
        config = load_config(args.config)
        if args.connect:
            config.defaults.libvirt_uri = args.connect
        return _COMMANDS[args.command](args, config)
    except ManagerError as exc:
        log("ERROR", exc.describe())
        return 1
    except KeyboardInterrupt:
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
