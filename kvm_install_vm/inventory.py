"""Read-only listing of the domains known to the hypervisor."""

from __future__ import annotations

from typing import Iterable, List

from kvm_install_vm.exceptions import NotConnectedError
from kvm_install_vm.models import DomainRecord, DomainState


class Inventory:
    def __init__(self, hypervisor) -> None:
        self.hypervisor = hypervisor

    def list(self) -> List[DomainRecord]:
        """Return every defined domain, active and inactive, sorted by name."""
        if not self.hypervisor.connected:
            raise NotConnectedError(f"Not connected to {getattr(self.hypervisor, 'uri', 'the hypervisor')}")
        records = []
        for domain in self.hypervisor.list_active():
            records.append(
                DomainRecord(
                    name=self.hypervisor.name(domain),
                    id=self.hypervisor.domain_id(domain),
                    state=self.hypervisor.state(domain),
                )
            )
        for domain in self.hypervisor.list_inactive():
            records.append(DomainRecord(name=self.hypervisor.name(domain), id=None, state=DomainState.OFF))
        return sorted(records, key=lambda record: record.name)


def select(
    records: Iterable[DomainRecord],
    running: bool = False,
    inactive: bool = False,
    show_all: bool = False,
) -> List[DomainRecord]:
    records = list(records)
    if show_all or not (running or inactive):
        return records
    return [
        record
        for record in records
        if (running and record.state is DomainState.RUNNING) or (inactive and record.id is None)
    ]


def format_table(records: Iterable[DomainRecord]) -> str:
    """Render records the way ``virsh list`` does."""
    rows = [(str(record.id) if record.id is not None else "-", record.name, str(record.state)) for record in records]
    id_width = max([2] + [len(row[0]) for row in rows])
    name_width = max([4] + [len(row[1]) for row in rows])
    header = f" {'Id':<{id_width}}   {'Name':<{name_width}}   State"
    lines = [header, "-" * (len(header) + 6)]
    for ident, name, state in rows:
        lines.append(f" {ident:<{id_width}}   {name:<{name_width}}   {state}")
    return "\n".join(lines)
