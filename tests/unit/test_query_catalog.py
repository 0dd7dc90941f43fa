"""
Unit tests -- provider query catalog loading and template lookup.
"""
import pytest
import yaml

from src.core.errors import InvalidQueryModel, TemplateNotFound
from src.query.builder import resolve
from src.query.catalog import load_catalog, parse_catalog
from src.query.model import UNBOUNDED


def test_providers_loaded(catalog):
    assert set(catalog.get_provider_names()) == {"AWS_MSK", "CONFLUENT_CLOUD"}


def test_msk_metric_ids(catalog):
    ids = catalog.get_metric_ids("AWS_MSK")
    for metric_id in ("CLUSTER_HEALTH", "UNHEALTHY_CLUSTERS", "BROKER_HEALTH", "TOPIC_THROUGHPUT",
                      "TOTAL_CLUSTERS", "TOTAL_BROKERS", "TOTAL_TOPICS",
                      "INCOMING_THROUGHPUT", "OUTGOING_THROUGHPUT", "THROUGHPUT_TIMESERIES"):
        assert metric_id in ids


def test_confluent_has_no_broker_templates(catalog):
    ids = catalog.get_metric_ids("CONFLUENT_CLOUD")
    assert "BROKER_HEALTH" not in ids
    assert "TOTAL_BROKERS" not in ids


def test_missing_template_raises(catalog):
    with pytest.raises(TemplateNotFound) as exc_info:
        catalog.build_template("CONFLUENT_CLOUD", "BROKER_HEALTH")
    assert exc_info.value.provider == "CONFLUENT_CLOUD"
    assert exc_info.value.metric_id == "BROKER_HEALTH"


def test_unknown_provider_raises(catalog):
    with pytest.raises(TemplateNotFound):
        catalog.template("KAFKA_ON_PREM", "CLUSTER_HEALTH")


def test_every_template_keeps_depth_through_build(catalog):
    for provider, metric_id in catalog.pairs():
        template = catalog.build_template(provider, metric_id)
        built = resolve(template, metric_id=metric_id)
        assert built.depth == template.depth, f"{provider}/{metric_id}"
        assert built.to_nrql().count("FROM (") == template.depth - 1, f"{provider}/{metric_id}"


def test_templates_are_shared_and_unchanged_by_builds(catalog):
    template = catalog.build_template("AWS_MSK", "CLUSTER_HEALTH")
    before = template.to_nrql()
    resolve(template, limit=5)
    assert catalog.build_template("AWS_MSK", "CLUSTER_HEALTH") is template
    assert template.to_nrql() == before


def test_unhealthy_clusters_is_two_level_unbounded(catalog):
    t = catalog.template("AWS_MSK", "UNHEALTHY_CLUSTERS")
    assert t.model.depth == 2
    assert t.model.limit == UNBOUNDED
    assert t.model.source.limit == UNBOUNDED
    assert t.summary == "health"
    assert t.for_aggregation is True
    assert t.scope == "broker"
    assert t.entity_type == "cluster"


def test_confluent_cluster_facet_is_either_name(catalog):
    t = catalog.template("CONFLUENT_CLOUD", "CLUSTER_HEALTH")
    assert t.model.group_by[0].names == ("resource.kafka.id", "kafka.id")
    assert "FACET (resource.kafka.id OR kafka.id)" in t.model.to_nrql()


def test_data_classes(catalog):
    assert catalog.template("AWS_MSK", "TOTAL_CLUSTERS").data_class == "entity"
    assert catalog.template("AWS_MSK", "CLUSTER_HEALTH").data_class == "metric"


def test_filter_vocab_parsed(catalog):
    topic = catalog.provider("AWS_MSK").filters["topic"]
    assert topic.home == "topic"
    assert topic.join.names == ("provider.clusterName",)
    assert topic.local_to == {"topic"}


# ── Rejection of invalid catalogs ────────────────────────

def _catalog_with(query: dict) -> dict:
    return {
        "version": 1,
        "providers": {
            "P": {
                "entities": {"e": {"event": "Ev", "name": "n", "attributes": ["n", "x"]}},
                "metrics": [{"id": "M", "query": query}],
            },
        },
    }


def test_invalid_template_rejected_at_load():
    raw = _catalog_with({
        "select": [{"expr": "sum(v)", "as": "v"}],
        "from": {"query": {
            "select": [{"expr": "latest(x)", "as": "v"}],
            "from": {"entity": "e"},
            "facet": ["n"],
            "limit": 10,
        }},
    })
    with pytest.raises(InvalidQueryModel, match="LIMIT MAX"):
        parse_catalog(raw)


def test_unknown_entity_rejected():
    raw = _catalog_with({"select": [{"expr": "count(*)"}], "from": {"entity": "missing"}})
    with pytest.raises(InvalidQueryModel, match="unknown entity"):
        parse_catalog(raw)


def test_load_catalog_from_file(tmp_path):
    raw = _catalog_with({"select": [{"expr": "count(*)", "as": "n"}], "from": {"entity": "e"}})
    path = tmp_path / "catalog.yml"
    path.write_text(yaml.safe_dump(raw))
    loaded = load_catalog(path)
    assert loaded.pairs() == [("P", "M")]
    assert loaded.build_template("P", "M").to_nrql() == "SELECT count(*) AS 'n' FROM Ev"


def test_status_vocab_names_health_template(catalog):
    for provider in ("AWS_MSK", "CONFLUENT_CLOUD"):
        status = catalog.provider(provider).filters["status"]
        assert status.health == "UNHEALTHY_CLUSTERS"
        assert status.home == "cluster"


def _with_status(health: str, result_shape: str = "faceted") -> dict:
    raw = _catalog_with({"select": [{"expr": "latest(x)", "as": "v"}], "from": {"entity": "e"}, "facet": ["n"]})
    provider = raw["providers"]["P"]
    provider["metrics"][0]["result_shape"] = result_shape
    provider["filters"] = {"status": {"home": "e", "attribute": "n", "local_to": ["e"], "health": health}}
    return raw


def test_unknown_health_template_rejected():
    with pytest.raises(InvalidQueryModel, match="unknown health template"):
        parse_catalog(_with_status("MISSING"))


def test_health_template_must_list_home_entities():
    with pytest.raises(InvalidQueryModel, match="must list"):
        parse_catalog(_with_status("M", result_shape="single"))
