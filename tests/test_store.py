import pytest

from cowsqlclient.constants import NodeRole
from cowsqlclient.store import InmemNodeStore, NodeInfo, NodeStore


def test_empty_store():
    assert InmemNodeStore().get() == []


def test_set_then_get():
    store = InmemNodeStore()
    servers = [NodeInfo(1, "@1", NodeRole.VOTER), NodeInfo(2, "@2", NodeRole.SPARE)]
    store.set(servers)
    assert store.get() == servers


def test_get_returns_copy():
    store = InmemNodeStore()
    store.set([NodeInfo(1, "@1")])
    got = store.get()
    got.append(NodeInfo(2, "@2"))
    assert len(store.get()) == 1


def test_set_replaces_previous():
    store = InmemNodeStore()
    store.set([NodeInfo(1, "@1")])
    store.set([NodeInfo(3, "@3")])
    assert [s.id for s in store.get()] == [3]


def test_node_info_defaults():
    info = NodeInfo(address="@1")
    assert info.id == 0
    assert info.role == NodeRole.VOTER


def test_node_store_is_abstract():
    with pytest.raises(TypeError):
        NodeStore()