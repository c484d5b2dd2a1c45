"""Configuration options for the floating IP controller."""

from dataclasses import dataclass
from typing import Optional

from keystoneauth1 import loading as ks_loading
from oslo_config import cfg

# Configuration group names
CONF_GROUP = "fip_controller"
NEUTRON_GROUP = "neutron"

FIP_BACKEND_PORT = "port"
FIP_BACKEND_FLOATINGIP = "floatingip"


def _get_fip_controller_opts():
    """Get controller configuration options.

    Returns:
        List of oslo_config options
    """
    return [
        # Dispatch
        cfg.IntOpt(
            "worker_count",
            default=5,
            min=1,
            max=64,
            help="Number of concurrent workers started for each work queue",
        ),
        cfg.FloatOpt(
            "queue_base_delay",
            default=0.005,
            min=0.0,
            help="Initial requeue delay in seconds after a handler failure. "
            "Doubles on every consecutive failure of the same item.",
        ),
        cfg.FloatOpt(
            "queue_max_delay",
            default=1000.0,
            min=0.0,
            help="Upper bound in seconds for the per-item requeue delay",
        ),
        cfg.IntOpt(
            "queue_max_retries",
            default=15,
            min=0,
            help=(
                "Number of times a failing work item is requeued before it is "
                "dropped. 0 means retry forever."
            ),
        ),
        # Periodic loops
        cfg.FloatOpt(
            "fip_sync_interval",
            default=3.0,
            min=0.1,
            help="Seconds between two runs of the Fip topology synchronizer",
        ),
        cfg.FloatOpt(
            "fip_gc_interval",
            default=60.0,
            min=1.0,
            help="Seconds between two garbage collection sweeps of eip allocations",
        ),
        cfg.FloatOpt(
            "fip_gc_debounce",
            default=3.0,
            min=0.0,
            help=(
                "Seconds to wait before re-checking a pod that is missing from "
                "the cache, to tolerate cache lag"
            ),
        ),
        cfg.IntOpt(
            "fip_orphan_grace_period",
            default=3600,
            min=0,
            help=(
                "Seconds a Fip record may stay orphaned (no Vpc references its "
                "external network) before it is deleted. Records that still "
                "carry allocations are never deleted. 0 disables deletion."
            ),
        ),
        # Kubernetes resources
        cfg.StrOpt(
            "kubeconfig",
            default=None,
            help="Path to a kubeconfig file. In-cluster configuration is used when unset.",
        ),
        cfg.StrOpt("crd_group", default="neutron.io", help="API group of the Fip and Port resources"),
        cfg.StrOpt("crd_version", default="v1", help="API version of the Fip and Port resources"),
        cfg.StrOpt("vpc_group", default="kubeovn.io", help="API group of the Vpc resource"),
        cfg.StrOpt("vpc_version", default="v1", help="API version of the Vpc resource"),
        # Pod annotation contract
        cfg.StrOpt("eip_annotation", default="ovn.kubernetes.io/eip", help="Pod annotation requesting an eip"),
        cfg.StrOpt("snat_annotation", default="ovn.kubernetes.io/snat", help="Pod annotation requesting a snat IP"),
        cfg.StrOpt(
            "logical_router_annotation",
            default="ovn.kubernetes.io/logical_router",
            help="Pod annotation naming the Vpc the pod belongs to",
        ),
        # Provider
        cfg.StrOpt(
            "fip_backend",
            default=FIP_BACKEND_PORT,
            choices=[FIP_BACKEND_PORT, FIP_BACKEND_FLOATINGIP],
            help=(
                "How a floating IP is materialised in Neutron. "
                "'port': a port on the external network holding the address. "
                "'floatingip': a Neutron floating IP object."
            ),
        ),
        cfg.StrOpt(
            "fip_port_device_owner",
            default="compute:kube-ovn-fip",
            help=(
                "Device owner set on ports created for floating IPs. Ports with "
                "this owner are not reported as forbidden IPs."
            ),
        ),
        cfg.StrOpt("fip_tag", default="kube-ovn", help="Tag added to provider resources created by the controller"),
        # Status API
        cfg.BoolOpt("status_api_enabled", default=True, help="Serve /healthz, /readyz and /v1/status"),
        cfg.StrOpt("status_api_host", default="127.0.0.1", help="Bind host of the status API"),
        cfg.PortOpt("status_api_port", default=10661, help="Bind port of the status API"),
    ]


def register_opts(conf, group=None):
    """Register controller configuration options.

    Also registers the keystoneauth session and auth options of the
    [neutron] group. The session ``timeout`` option bounds every provider call.

    Args:
        conf: oslo_config.cfg.ConfigOpts instance
        group: Configuration group name (default: CONF_GROUP)
    """
    if group is None:
        group = CONF_GROUP
    conf.register_opts(_get_fip_controller_opts(), group=group)
    ks_loading.register_session_conf_options(conf, NEUTRON_GROUP)
    ks_loading.register_auth_conf_options(conf, NEUTRON_GROUP)


def list_opts():
    """Return a list of controller options for oslo-config-generator.

    Returns:
        List of (group_name, options) tuples
    """
    return [
        (CONF_GROUP, _get_fip_controller_opts()),
    ]


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable snapshot of the controller configuration.

    Built once at start-up and handed to every component that needs it.
    """

    worker_count: int = 5
    queue_base_delay: float = 0.005
    queue_max_delay: float = 1000.0
    queue_max_retries: int = 15
    fip_sync_interval: float = 3.0
    fip_gc_interval: float = 60.0
    fip_gc_debounce: float = 3.0
    fip_orphan_grace_period: int = 3600
    kubeconfig: Optional[str] = None
    crd_group: str = "neutron.io"
    crd_version: str = "v1"
    vpc_group: str = "kubeovn.io"
    vpc_version: str = "v1"
    eip_annotation: str = "ovn.kubernetes.io/eip"
    snat_annotation: str = "ovn.kubernetes.io/snat"
    logical_router_annotation: str = "ovn.kubernetes.io/logical_router"
    fip_backend: str = FIP_BACKEND_PORT
    fip_port_device_owner: str = "compute:kube-ovn-fip"
    fip_tag: str = "kube-ovn"
    status_api_enabled: bool = True
    status_api_host: str = "127.0.0.1"
    status_api_port: int = 10661

    @classmethod
    def from_conf(cls, conf, group=CONF_GROUP) -> "ControllerConfig":
        """Build a config snapshot from registered oslo options."""
        section = getattr(conf, group)
        return cls(**{name: getattr(section, name) for name in cls.__dataclass_fields__})
