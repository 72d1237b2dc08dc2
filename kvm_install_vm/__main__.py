"""Allow ``python -m kvm_install_vm``."""

from kvm_install_vm.cli import main

raise SystemExit(main())
