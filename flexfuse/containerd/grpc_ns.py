# flexfuse/containerd/grpc_ns.py
import collections

import grpc

NAMESPACE_HEADER = "containerd-namespace"
LEASE_HEADER = "containerd-lease"


class _ClientCallDetails(
        collections.namedtuple(
            "_ClientCallDetails",
            ("method", "timeout", "metadata", "credentials", "wait_for_ready", "compression")),
        grpc.ClientCallDetails):
    pass


class _AddNamespaceInterceptor(grpc.UnaryUnaryClientInterceptor,
                               grpc.UnaryStreamClientInterceptor):
    """Scopes every call on the channel to one containerd namespace."""

    def __init__(self, namespace: str, extra_md=None):
        self.namespace = namespace
        self.extra_md = extra_md or []

    def _inject(self, client_call_details):
        new_md = []
        if client_call_details.metadata:
            new_md.extend(client_call_details.metadata)

        # namespace first
        new_md.append((NAMESPACE_HEADER, self.namespace))
        new_md.extend(self.extra_md)

        return _ClientCallDetails(
            client_call_details.method,
            client_call_details.timeout,
            new_md,
            client_call_details.credentials,
            getattr(client_call_details, "wait_for_ready", None),
            getattr(client_call_details, "compression", None),
        )

    def intercept_unary_unary(self, continuation, client_call_details, request):
        return continuation(self._inject(client_call_details), request)

    def intercept_unary_stream(self, continuation, client_call_details, request):
        return continuation(self._inject(client_call_details), request)


def lease_md(lease_id: str):
    return ((LEASE_HEADER, lease_id),)
