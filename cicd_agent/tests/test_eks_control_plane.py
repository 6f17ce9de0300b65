import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from cicd_agent.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from cicd_agent.integrations.eks import ClusterSpec, EksControlPlane


class SettingsStub:
    aws_region = "us-east-1"
    http_timeout = 1.0
    eks_role_arn = "arn:aws:iam::123:role/eks"
    eks_node_role_arn = "arn:aws:iam::123:role/node"
    eks_subnet_ids = ["subnet-a", "subnet-b"]


def _error(code, status=400):
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, "Op")


class FakeEks:
    def __init__(self):
        self.clusters = {}
        self.nodegroups = {}
        self.create_cluster_calls = []

    def describe_cluster(self, name):
        if name not in self.clusters:
            raise _error("ResourceNotFoundException", 404)
        return {"cluster": self.clusters[name]}

    def create_cluster(self, **kwargs):
        self.create_cluster_calls.append(kwargs)
        if kwargs["name"] in self.clusters:
            raise _error("ResourceInUseException", 409)
        self.clusters[kwargs["name"]] = {
            "name": kwargs["name"],
            "status": "CREATING",
            "version": kwargs["version"],
        }
        return {"cluster": self.clusters[kwargs["name"]]}

    def describe_nodegroup(self, clusterName, nodegroupName):
        if nodegroupName not in self.nodegroups:
            raise _error("ResourceNotFoundException", 404)
        return {"nodegroup": {"status": self.nodegroups[nodegroupName]}}

    def create_nodegroup(self, **kwargs):
        self.nodegroups[kwargs["nodegroupName"]] = "CREATING"
        return {"nodegroup": {"status": "CREATING"}}


SPEC = ClusterSpec(name="demo", version="1.30", node_type="t3.large", desired_capacity=2)


def test_describe_missing_cluster_returns_none():
    assert EksControlPlane(SettingsStub(), client=FakeEks()).describe_cluster("demo") is None


def test_create_is_idempotent():
    fake = FakeEks()
    plane = EksControlPlane(SettingsStub(), client=fake)
    created = plane.create_cluster(SPEC)
    assert created.status == "CREATING"
    assert fake.create_cluster_calls[0]["resourcesVpcConfig"] == {"subnetIds": ["subnet-a", "subnet-b"]}

    fake.clusters["demo"].update(
        status="ACTIVE",
        endpoint="https://ABC.eks.amazonaws.com",
        identity={"oidc": {"issuer": "https://oidc.eks.us-east-1.amazonaws.com/id/ABC"}},
    )
    again = plane.create_cluster(SPEC)
    assert again.active
    assert again.oidc_issuer == "https://oidc.eks.us-east-1.amazonaws.com/id/ABC"


def test_ensure_nodegroup_creates_once():
    fake = FakeEks()
    plane = EksControlPlane(SettingsStub(), client=fake)
    assert plane.ensure_nodegroup(SPEC) == "CREATING"
    fake.nodegroups["demo-default"] = "ACTIVE"
    assert plane.ensure_nodegroup(SPEC) == "ACTIVE"


def test_missing_configuration():
    class Unconfigured(SettingsStub):
        eks_role_arn = None

    with pytest.raises(ValidationError):
        EksControlPlane(Unconfigured(), client=FakeEks()).create_cluster(SPEC)


def test_error_mapping():
    class Throttled(FakeEks):
        def describe_cluster(self, name):
            raise _error("ThrottlingException", 400)

    class Broken(FakeEks):
        def describe_cluster(self, name):
            raise _error("ServerException", 500)

    class Offline(FakeEks):
        def describe_cluster(self, name):
            raise EndpointConnectionError(endpoint_url="https://eks.us-east-1.amazonaws.com")

    with pytest.raises(RateLimitError):
        EksControlPlane(SettingsStub(), client=Throttled()).describe_cluster("demo")
    with pytest.raises(ApiError) as ei:
        EksControlPlane(SettingsStub(), client=Broken()).describe_cluster("demo")
    assert ei.value.retryable
    assert ei.value.extra["aws_code"] == "ServerException"
    with pytest.raises(NetworkError):
        EksControlPlane(SettingsStub(), client=Offline()).describe_cluster("demo")
