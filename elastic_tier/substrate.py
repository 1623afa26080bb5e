import time

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from elastic_tier.members import MemberHandle


class LaunchError(Exception):
    pass


def init_k8s_client():
    try:
        k8s_config.load_incluster_config()
        print("Loaded in-cluster config", flush=True)
    except ConfigException:
        k8s_config.load_kube_config()
        print("Loaded local kubeconfig", flush=True)
    return client.CoreV1Api()


class KubernetesSubstrate:
    """Runs each pool member as a pod labelled with the pool name."""

    def __init__(self, core_v1=None, poll_interval=2, termination_grace=30,
                 sleep=time.sleep, monotonic=time.monotonic):
        self.core_v1 = core_v1 or init_k8s_client()
        self.poll_interval = poll_interval
        self.termination_grace = termination_grace
        self._sleep = sleep
        self._monotonic = monotonic

    def _pod_body(self, spec, name):
        container = client.V1Container(
            name="worker",
            image=spec.image,
            ports=[client.V1ContainerPort(container_port=spec.port)],
            resources=client.V1ResourceRequirements(
                limits=dict(spec.resources), requests=dict(spec.resources)),
        )
        return client.V1Pod(
            metadata=client.V1ObjectMeta(
                name=name,
                labels={**spec.labels, "instance-type": spec.instance_type},
            ),
            spec=client.V1PodSpec(containers=[container], restart_policy="Always"),
        )

    def launch(self, spec, name, timeout=120):
        try:
            self.core_v1.create_namespaced_pod(spec.namespace, self._pod_body(spec, name))
        except ApiException as e:
            raise LaunchError(f"create {name}: {e.status} {e.reason}") from e

        deadline = self._monotonic() + timeout
        while True:
            try:
                pod = self.core_v1.read_namespaced_pod(name, spec.namespace)
            except ApiException as e:
                raise LaunchError(f"read {name}: {e.status} {e.reason}") from e

            phase = pod.status.phase if pod.status else None
            if phase == "Running" and pod.status.pod_ip:
                return MemberHandle(name=name, address=pod.status.pod_ip, namespace=spec.namespace)

            if phase in ("Failed", "Succeeded"):
                self._cleanup(name, spec.namespace)
                raise LaunchError(f"{name} exited during launch (phase={phase})")

            if self._monotonic() >= deadline:
                self._cleanup(name, spec.namespace)
                raise LaunchError(f"{name} not running after {timeout}s (phase={phase})")

            self._sleep(self.poll_interval)

    def terminate(self, handle):
        self._delete(handle.name, handle.namespace)
        print(f"Terminated pod {handle.namespace}/{handle.name}", flush=True)

    def _delete(self, name, namespace):
        try:
            self.core_v1.delete_namespaced_pod(
                name=name, namespace=namespace,
                grace_period_seconds=self.termination_grace,
            )
        except ApiException as e:
            if e.status != 404:
                raise

    def _cleanup(self, name, namespace):
        try:
            self._delete(name, namespace)
        except ApiException as e:
            print(f"Failed to clean up pod {namespace}/{name}: {e.status} {e.reason}", flush=True)

    def list_members(self, spec):
        selector = ",".join(f"{k}={v}" for k, v in sorted(spec.labels.items()))
        pods = self.core_v1.list_namespaced_pod(spec.namespace, label_selector=selector)
        handles = []
        for pod in pods.items:
            if pod.metadata.deletion_timestamp is not None:
                continue
            if pod.status.phase == "Running" and pod.status.pod_ip:
                handles.append(MemberHandle(pod.metadata.name, pod.status.pod_ip, spec.namespace))
        return handles
