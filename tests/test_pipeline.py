"""Tests for the aggregation pipeline."""

import json

import pytest

from ledger_services.aggregation.pipeline import (
    AGGREGATION_COUNTER_KEY,
    AGGREGATION_PREFIX,
    LAST_AGGREGATION_KEY,
    AggregationStatus,
    PipelineState,
    aggregation_id,
)
from ledger_services.consensus.endorsement import AGGREGATION_RANGE_END
from ledger_services.errors import MalformedInputError, StoreUnavailableError
from ledger_services.schemas import Measurement
from tests.conftest import make_reading


def _aggregate_keys(ledger):
    return [key for key, _ in ledger.range_scan(AGGREGATION_PREFIX, AGGREGATION_RANGE_END)]


class TestAggregationPipeline:

    def test_two_readings_are_averaged_and_compacted(self, pipeline, anchor, reading_store, ledger):
        anchor.record(make_reading(timestamp="2024-05-01T10:00:00.000Z", sensor_id="A",
                                   co2=400, pm25=4.0, vocs=10))
        anchor.record(make_reading(timestamp="2024-05-01T10:00:01.000Z", sensor_id="B",
                                   co2=600, pm25=6.0, vocs=30))

        outcome = pipeline.aggregate()

        assert outcome.ok
        aggregate = outcome.aggregate
        assert aggregate.avg_co2.value == 500
        assert aggregate.avg_pm25.value == pytest.approx(5.0)
        assert aggregate.avg_vocs.value == 20
        assert aggregate.avg_co2.unit == "ppm"
        assert aggregate.data_count == 2
        assert aggregate.aggregation_number == 1
        assert reading_store.count() == 0
        assert anchor.current().is_empty
        assert _aggregate_keys(ledger) == [aggregate.id]
        assert json.loads(ledger.get(aggregate.id))["avgCO2"] == {"unit": "ppm", "value": 500.0}
        assert pipeline.state == PipelineState.IDLE

    def test_second_run_within_interval_is_too_soon(self, pipeline, anchor, reading_store, ledger, clock):
        anchor.record(make_reading())
        assert pipeline.aggregate().ok
        anchor.record(make_reading(sensor_id="M02"))
        before = dict((k, ledger.get(k)) for k in (LAST_AGGREGATION_KEY, AGGREGATION_COUNTER_KEY))

        clock.advance(60)
        outcome = pipeline.aggregate()

        assert outcome.status == AggregationStatus.TOO_SOON
        assert outcome.message == "Not enough time has passed to aggregate data"
        assert reading_store.count() == 1
        assert anchor.current().data_count == 1
        assert len(_aggregate_keys(ledger)) == 1
        assert before == dict((k, ledger.get(k)) for k in (LAST_AGGREGATION_KEY, AGGREGATION_COUNTER_KEY))

    def test_runs_again_after_interval(self, pipeline, anchor, clock, ledger):
        anchor.record(make_reading())
        first = pipeline.aggregate()
        clock.advance(900)
        anchor.record(make_reading(sensor_id="M02"))
        second = pipeline.aggregate()
        assert second.ok
        assert second.aggregate.aggregation_number == first.aggregate.aggregation_number + 1
        assert _aggregate_keys(ledger) == [first.aggregate.id, second.aggregate.id]

    def test_failed_clear_reaggregates_the_same_readings(self, pipeline, anchor, reading_store, ledger,
                                                         clock, monkeypatch):
        anchor.record(make_reading(sensor_id="A", co2=400))
        anchor.record(make_reading(sensor_id="B", co2=600))

        def unavailable():
            raise StoreUnavailableError("Failed to delete readings after 3 attempts")

        monkeypatch.setattr(reading_store, "clear", unavailable)
        with pytest.raises(StoreUnavailableError):
            pipeline.aggregate()
        monkeypatch.undo()

        first = _aggregate_keys(ledger)
        assert len(first) == 1
        assert reading_store.count() == 2
        assert anchor.current().data_count == 2
        assert pipeline.state == PipelineState.IDLE

        clock.advance(900)
        outcome = pipeline.aggregate()

        assert outcome.status == AggregationStatus.AGGREGATED
        assert outcome.aggregate.data_count == 2
        assert outcome.aggregate.aggregation_number == 2
        assert _aggregate_keys(ledger) == first + [outcome.aggregate.id]
        assert reading_store.count() == 0

    def test_no_data(self, pipeline, ledger):
        outcome = pipeline.aggregate()
        assert outcome.status == AggregationStatus.NO_DATA
        assert outcome.message == "No data available for aggregation"
        assert ledger.get(LAST_AGGREGATION_KEY) is None

    def test_root_mismatch_aborts_without_mutation(self, pipeline, anchor, readings_collection, reading_store, ledger):
        anchor.record(make_reading(sensor_id="A"))
        anchor.record(make_reading(sensor_id="B"))
        readings_collection.update_one({"sensorId": "A"}, {"$set": {"VOCs.value": 999.0}})

        outcome = pipeline.aggregate()

        assert outcome.status == AggregationStatus.INTEGRITY_FAULT
        assert outcome.report.kind == "root_mismatch"
        assert pipeline.state == PipelineState.ABORTED
        assert reading_store.count() == 2
        assert _aggregate_keys(ledger) == []
        assert "verification" in outcome.to_response()

    def test_count_mismatch_retries_with_backoff(self, pipeline, anchor, reading_store, ledger, sleeps):
        anchor.record(make_reading(sensor_id="A"))
        reading_store.upsert(make_reading(sensor_id="B"))

        outcome = pipeline.aggregate()

        assert outcome.status == AggregationStatus.DIVERGED
        assert sleeps == [1.0, 2.0]
        assert reading_store.count() == 2
        assert _aggregate_keys(ledger) == []

    def test_count_mismatch_recovers_when_anchor_catches_up(self, pipeline, anchor, reading_store, sleeps):
        anchor.record(make_reading(sensor_id="A"))
        late = make_reading(sensor_id="B")
        reading_store.upsert(late)
        pipeline.sleep = lambda delay: (sleeps.append(delay), anchor.record(late))

        outcome = pipeline.aggregate()

        assert outcome.ok
        assert outcome.aggregate.data_count == 2
        assert sleeps == [1.0]

    def test_mixed_units_are_rejected(self, pipeline, anchor, reading_store):
        anchor.record(make_reading(sensor_id="A"))
        odd = make_reading(sensor_id="B").model_copy(update={"co2": Measurement(value=0.04, unit="%")})
        anchor.record(odd)
        with pytest.raises(MalformedInputError):
            pipeline.aggregate()
        assert reading_store.count() == 2
        assert pipeline.state == PipelineState.IDLE

    def test_success_response_shape(self, pipeline, anchor):
        anchor.record(make_reading())
        response = pipeline.aggregate().to_response()
        assert response["message"] == "Data aggregated successfully"
        assert response["aggregatedData"]["id"] == response["id"]
        assert response["aggregatedData"]["dataCount"] == 1


def test_aggregation_ids_sort_by_number():
    assert aggregation_id(2, "2024-05-01T10:00:00.000Z") < aggregation_id(10, "2023-01-01T00:00:00.000Z")
    assert aggregation_id(7, "2024-05-01T10:00:00.000Z") == "aggregation_00000007_2024-05-01T10:00:00.000Z"
