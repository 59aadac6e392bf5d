"""Fixed paths and network addresses shared across the runtime."""

TIMESTAMP_TARGET_FILE = "/tmp/urunc.zlog"

STATIC_NETWORK_TAP_IP = "172.16.1.1"
STATIC_NETWORK_UNIKERNEL_IP = "172.16.1.2"
DYNAMIC_NETWORK_TAP_IP = "172.16.X.2"
QUEUE_PROXY_REDIRECT_IP = "172.16.1.2"