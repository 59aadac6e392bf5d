# urunc

This package provides building blocks for running unikernels that are packaged as OCI containers.

- `urunc.config` reads the unikernel description from the annotations of an OCI spec. If those are empty, it reads `urunc.json` in the bundle's root filesystem instead. It base64-decodes the values. It can also turn a config back into annotations (`UnikernelConfig.to_map`) or into `urunc.json` form (`UnikernelConfig.to_json`).
- `urunc.vmm_base` holds the shared pieces: `ExecArgs`, `Unikernel` (the per-monitor options a guest asks for), `VmmType`, the errors `VMMError` and `VMMNotInstalledError`, and the memory and architecture helpers.
- `urunc.vmms` contains the monitors `SPT`, `HVT`, `Qemu`, `Firecracker` and `Hedge`, plus `new_vmm`. It finds a monitor's binary on `PATH`. It builds the monitor's command line (`command`) and replaces the current process with the monitor (`execve`).
- `urunc.network` creates a TAP device for a unikernel in the current network namespace through the `ip`, `tc` and `iptables` tools, and removes it again with `cleanup`.
- `urunc.constants` holds the fixed addresses and paths.

## Installation

```
pip install .
```

To install with the test extra, run `pip install .[test]`.

## Unikernel configuration

```python
from urunc.config import get_unikernel_config

spec = {
    "root": {"path": "rootfs"},
    "annotations": {"com.urunc.unikernel.unikernelType": "dW5pa3JhZnQ="},
}
conf = get_unikernel_config("/path/to/bundle", spec)
print(conf.unikernel_type)  # "unikraft"
print(conf.to_map())
```

`config_from_spec` raises `EmptyAnnotationsError` when none of the unikernel annotations is set. `config_from_json` reads a `urunc.json` file. When `to_map` finds the device-mapper flag unset, it takes the value from the `USE_DEVMAPPER_AS_BLOCK` environment variable.

## Monitor command lines

```python
from urunc.vmm_base import ExecArgs, Unikernel
from urunc.vmms import Qemu

vmm = Qemu("/usr/bin/qemu-system-x86_64")
args = ExecArgs(unikernel_path="/kernel", command="console=ttyS0", mem_size_b=512_000_000)
print(vmm.command(args, Unikernel()))
```

`new_vmm(VmmType.QEMU)` and the other types look up the monitor's binary on `PATH`. If the binary is missing, they raise `VMMNotInstalledError`.

Monitor behaviour:

- `Firecracker.execve` writes `fc.json` to the working directory before it starts Firecracker.
- `HVT.execve` with `seccomp=True` raises `VMMError`, because it cannot install the filter itself.
- `Hedge` cannot run guests, so every operation on it raises `VMMError`.

## Networking

Network setup needs root privileges.

- `new_network_manager("static")` gives a `StaticNetwork`. It creates one TAP device with a fixed address and a NAT rule through `eth0`.
- `new_network_manager("dynamic")` gives a `DynamicNetwork`. It mirrors traffic between the TAP device and `eth0` with traffic-control redirect rules, and it allows only one unikernel per namespace.

Call `network_setup(uid, gid)` on either manager to create the device. It returns a `UnikernelNetworkInfo`.

## What this package does not do

- It has no command-line runtime. There is no `create`, `start`, `kill` or `delete` command.
- It does no container state handling and no OCI hook execution.
- It does not capture timestamps.
- It provides library functions only. A container runtime built on it has to supply those pieces itself.