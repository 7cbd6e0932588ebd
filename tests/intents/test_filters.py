import pytest

from clusterreg._cogs.configs.configuration import CLUSTERID_LABEL, NAME_LABEL, NAMESPACE_LABEL
from clusterreg._cogs.structs.references import MANAGEDCLUSTERS, MANIFESTWORKS, ObjectKey, \
                                                REGISTEREDCLUSTERS
from clusterreg._core.intents.filters import HUB_FILTERS, PRIMARY_FILTER, ManagedClusterFilter, \
                                             ManifestWorkFilter, RegisteredClusterFilter

CORRELATION = {NAME_LABEL: 'rc1', NAMESPACE_LABEL: 'ns1'}


def rc(**kwargs):
    body = {'metadata': {'name': 'rc1', 'namespace': 'ns1', 'generation': 1},
            'spec': {'location': 'root:ws'}}
    for key, val in kwargs.items():
        body.setdefault(key, {}).update(val)
    return body


def mc(labels=CORRELATION, **kwargs):
    body = {'metadata': {'name': 'mc1', 'labels': dict(labels)}, 'spec': {}, 'status': {}}
    for key, val in kwargs.items():
        body.setdefault(key, {}).update(val)
    return body


def test_watched_resources():
    assert PRIMARY_FILTER.resource == REGISTEREDCLUSTERS
    assert [f.resource for f in HUB_FILTERS] == [MANAGEDCLUSTERS, MANIFESTWORKS]


@pytest.mark.parametrize('old, new, expected', [
    pytest.param(None, rc(), True, id='creation'),
    pytest.param(rc(), None, True, id='deletion'),
    pytest.param(rc(), rc(spec={'location': 'root:other'}), True, id='spec'),
    pytest.param(rc(), rc(metadata={'labels': {'a': 'b'}}), True, id='labels'),
    pytest.param(rc(), rc(metadata={'deletionTimestamp': '2020-01-01T00:00:00Z'}), True, id='deletion-mark'),
    pytest.param(rc(), rc(metadata={'finalizers': ['x']}), True, id='finalizers'),
    pytest.param(rc(), rc(status={'clusterID': 'cid'}), False, id='status'),
    pytest.param(rc(status={}), rc(status={'clusterID': 'cid'}, spec={'x': 'y'}), False, id='status-and-spec'),
    pytest.param(rc(), rc(), True, id='resync'),
])
def test_registered_cluster_changes(old, new, expected):
    assert RegisteredClusterFilter().interesting_on(old, new) == expected


def test_registered_cluster_keys():
    assert RegisteredClusterFilter().keys_for(rc()) == [ObjectKey('ns1', 'rc1')]


@pytest.mark.parametrize('old, new, expected', [
    pytest.param(None, mc(), True, id='creation'),
    pytest.param(None, mc(labels={}), False, id='uncorrelated-creation'),
    pytest.param(None, mc(labels={NAME_LABEL: 'rc1'}), False, id='half-correlated-creation'),
    pytest.param(mc(), None, False, id='deletion'),
    pytest.param(mc(), mc(), False, id='resync'),
    pytest.param(mc(), mc(metadata={'annotations': {'a': 'b'}}), False, id='annotations'),
    pytest.param(mc(), mc(status={'conditions': []}), True, id='status'),
    pytest.param(mc(), mc(spec={'managedClusterClientConfigs': [{'url': 'u'}]}), True, id='client-configs'),
    pytest.param(mc(), mc(labels=dict(CORRELATION, **{CLUSTERID_LABEL: 'cid'})), True, id='cluster-id'),
    pytest.param(mc(labels={}), mc(labels={}, status={'x': 'y'}), False, id='uncorrelated-status'),
])
def test_managed_cluster_changes(old, new, expected):
    assert ManagedClusterFilter().interesting_on(old, new) == expected


@pytest.mark.parametrize('old, new, expected', [
    pytest.param(None, mc(), False, id='creation'),
    pytest.param(mc(), None, False, id='deletion'),
    pytest.param(mc(), mc(), False, id='resync'),
    pytest.param(mc(), mc(spec={'workload': {}}), False, id='spec'),
    pytest.param(mc(), mc(status={'conditions': [{'type': 'Applied'}]}), True, id='status'),
    pytest.param(mc(labels={}), mc(labels={}, status={'x': 'y'}), False, id='uncorrelated-status'),
])
def test_manifest_work_changes(old, new, expected):
    assert ManifestWorkFilter().interesting_on(old, new) == expected


def test_derived_objects_are_mapped_by_labels():
    assert ManagedClusterFilter().keys_for(mc()) == [ObjectKey('ns1', 'rc1')]
    assert ManifestWorkFilter().keys_for(mc()) == [ObjectKey('ns1', 'rc1')]


def test_uncorrelated_objects_are_not_mapped():
    assert ManagedClusterFilter().keys_for(mc(labels={})) == []
    assert ManifestWorkFilter().keys_for(mc(labels={NAMESPACE_LABEL: 'ns1'})) == []
