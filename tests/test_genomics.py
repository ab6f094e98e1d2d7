from datetime import date, datetime, timedelta, timezone

from conftest import CURATED_URL, GENOMICS_URL, FakeResponse
from outbreak_web.errors import ShapeError, TransportError
from outbreak_web.genomics import queries, reports
from outbreak_web.state import LoadingFlags

TODAY = date(2021, 3, 10)

CURATED = [
    {
        "mutation_name": "B.1.351",
        "reportType": "lineage",
        "variantType": "Variant of Concern",
        "mutations": [{"mutation": "s:e484k"}],
    },
    {
        "mutation_name": "B.1.1.7",
        "reportType": "lineage",
        "variantType": "Variant of Concern",
        "mutations": [],
    },
    {
        "mutation_name": "P.2",
        "reportType": "lineage",
        "variantType": "Variant of Interest",
        "mutations": [],
    },
    {
        "mutation_name": "S:E484K",
        "reportType": "mutation",
        "variantType": "Mutation of Concern",
        "mutations": [{"mutation": "s:e484k"}],
    },
]


def _submission(day, count=1234):
    return {"results": [{"date": day.isoformat(), "date_count": count}]}


def _prevalence_route(params):
    if params.get("cumulative") == "true":
        return {
            "results": {
                "global_prevalence": 0.1234,
                "lineage_count": 2500,
                "first_detected": "2020-09-20",
                "last_detected": "2021-03-01",
            }
        }
    return {"results": [{"date": "2021-03-01", "proportion": 0.2}, {"date": "2021-03-02", "proportion": 0.3}]}


def _most_recent_route(params):
    if params.get("detected") == "true":
        return {"results": {"names": ["united kingdom", "isle of man"]}}
    return {"results": [{"name": "united kingdom", "proportion": 0.42, "date": "2021-03-01"}]}


def genomics_routes(**overrides):
    routes = {
        "metadata": {"build_date": "2021-03-04T07:21:32.123456-07:00"},
        "most-recent-submission-date": _submission(date.today()),
        "most-recent-collection-date": {"results": [{"date": "2021-03-01"}]},
        "sequence-count": {"results": [{"total_count": 1234567}]},
        "global-prevalence": _prevalence_route,
        "prevalence-by-location": _prevalence_route,
        "lineage-by-country-most-recent": _most_recent_route,
        "lineage-by-division-most-recent": _most_recent_route,
        "curated_mutations.json": CURATED,
        "lineage-mutations": {
            "results": [
                {"mutation": "s:n501y", "gene": "S", "codon_num": "501", "prevalence": 0.99},
                {"mutation": "orf1a:s3675-", "gene": "ORF1a", "codon_num": 3675, "prevalence": 0.98},
            ]
        },
        "mutation-details": {"results": [{"mutation": "s:e484k", "codon_num": "484"}]},
        "mutations-by-lineage": {
            "results": [
                {"pangolin_lineage": "b.1.351", "proportion": 0.9},
                {"pangolin_lineage": "p.1", "proportion": 0.001},
            ]
        },
    }
    routes.update(overrides)
    return routes


def test_build_query_params():
    assert queries.build_query_params("B.1.1.7", "S:E484K") == {
        "pangolin_lineage": "B.1.1.7",
        "mutations": "S:E484K",
    }
    assert queries.build_query_params() == {}


def test_get_date_updated(fake_session):
    session = fake_session(genomics_routes())
    now = datetime(2021, 3, 4, 17, 21, tzinfo=timezone.utc)

    outcome = queries.get_date_updated(GENOMICS_URL, now=now, session=session)

    assert outcome.ok
    assert outcome.value.date_updated == "4 March 2021"
    assert outcome.value.last_updated == "3h"


def test_get_new_today_counts_recent_submissions(fake_session):
    session = fake_session(genomics_routes(**{"most-recent-submission-date": _submission(TODAY - timedelta(days=1))}))

    outcome = queries.get_new_today(GENOMICS_URL, {"pangolin_lineage": "B.1.1.7"}, "Canada", "country", today=TODAY, session=session)

    assert outcome.value == {"name": "Canada", "date_count": 1234, "date_count_today": "1,234"}
    params = session.calls[0][1]
    assert params["country"] == "Canada"
    assert params["pangolin_lineage"] == "B.1.1.7"


def test_get_new_today_is_zero_for_stale_submissions(fake_session):
    session = fake_session(genomics_routes(**{"most-recent-submission-date": _submission(TODAY - timedelta(days=2))}))

    outcome = queries.get_new_today(GENOMICS_URL, {}, queries.WORLDWIDE, None, today=TODAY, session=session)

    assert outcome.value["date_count_today"] == 0
    assert "country" not in session.calls[0][1]


def test_get_new_today_requires_a_single_record(fake_session):
    session = fake_session(genomics_routes(**{"most-recent-submission-date": {"results": []}}))

    outcome = queries.get_new_today(GENOMICS_URL, {}, "Canada", "country", today=TODAY, session=session)

    assert outcome.status == "failure"
    assert isinstance(outcome.error, ShapeError)
    assert outcome.value == {"name": "Canada", "date_count": None, "date_count_today": None}


def test_get_new_today_all_sorts_by_count_and_skips_world(fake_session):
    def submission(params):
        counts = {"Canada": 5, "Mexico": 50}
        return _submission(TODAY, counts.get(params.get("country"), 500))

    session = fake_session(genomics_routes(**{"most-recent-submission-date": submission}))
    locations = [
        {"name": "Worldwide", "type": "world"},
        {"name": "Canada", "type": "country"},
        {"name": "Mexico", "type": "country"},
    ]

    outcome = queries.get_new_today_all(GENOMICS_URL, {}, locations, today=TODAY, session=session)

    assert [r["name"] for r in outcome.value] == ["Worldwide", "Mexico", "Canada"]
    assert len(session.calls) == 3


def test_get_cum_prevalence_formats_fields(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_cum_prevalence(GENOMICS_URL, {"pangolin_lineage": "B.1.1.7"}, "Canada", "country", session=session)

    row = outcome.value
    assert row["name"] == "Canada"
    assert row["proportion_formatted"] == "12%"
    assert row["lineage_count_formatted"] == "2,500"
    assert row["first_detected"] == "20 Sep 2020"
    assert session.calls[0][1]["country"] == "Canada"


def test_get_cum_prevalence_not_detected(fake_session):
    session = fake_session(
        genomics_routes(**{"prevalence-by-location": {"results": {"global_prevalence": 0, "lineage_count": 0}}})
    )

    outcome = queries.get_cum_prevalence(GENOMICS_URL, {}, "Canada", "country", session=session)

    assert outcome.value["proportion_formatted"] == "not detected"


def test_get_cum_prevalences_drops_failed_members(fake_session):
    def prevalence(params):
        if params.get("country") == "Mexico":
            return FakeResponse(status_code=500)
        return _prevalence_route(params)

    session = fake_session(genomics_routes(**{"prevalence-by-location": prevalence}))
    locations = [{"name": "Canada", "type": "country"}, {"name": "Mexico", "type": "country"}]

    outcome = queries.get_cum_prevalences(GENOMICS_URL, {}, locations, session=session)

    assert outcome.ok
    assert [r["name"] for r in outcome.value] == ["Canada"]
    assert isinstance(outcome.absorbed[0], TransportError)


def test_get_location_prevalence_worldwide(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_location_prevalence(GENOMICS_URL, {}, queries.WORLDWIDE, None, session=session)

    row = outcome.value[0]
    assert row["name"] == "United Kingdom"
    assert row["location_id"] == "country_UnitedKingdom"
    assert row["date_last_detected"] == "2021-03-01"
    assert "date" not in row
    assert row["proportion_formatted"] == "42%"
    assert session.calls_to("lineage-by-country-most-recent")


def test_get_location_prevalence_within_country(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_location_prevalence(GENOMICS_URL, {}, "United Kingdom", "country", ndays=60, session=session)

    assert outcome.value[0]["location_id"] == "UnitedKingdom"
    url, params, _ = session.calls[0]
    assert url.endswith("lineage-by-division-most-recent")
    assert params["country"] == "United Kingdom"
    assert params["ndays"] == 60


def test_get_location_prevalence_is_empty_for_divisions(fake_session):
    session = fake_session(genomics_routes())
    outcome = queries.get_location_prevalence(GENOMICS_URL, {}, "Ontario", "division", session=session)
    assert outcome.ok
    assert outcome.value == []
    assert session.calls == []


def test_get_positive_locations(fake_session):
    session = fake_session(genomics_routes())
    outcome = queries.get_positive_locations(GENOMICS_URL, {}, queries.WORLDWIDE, session=session)
    assert outcome.value == ["United Kingdom", "Isle of Man"]


def test_get_mutations_by_lineage_applies_threshold(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_mutations_by_lineage(GENOMICS_URL, "S:E484K", proportion_threshold=0.5, session=session)

    assert [r["pangolin_lineage"] for r in outcome.value] == ["B.1.351"]
    assert outcome.value[0]["proportion_formatted"] == "90%"


def test_leaf_queries_without_selector_skip_the_network(fake_session):
    session = fake_session(genomics_routes())
    assert queries.get_mutation_details(GENOMICS_URL, None, session=session).value == []
    assert queries.get_characteristic_mutations(GENOMICS_URL, None, session=session).value == []
    assert session.calls == []


def test_get_curated_list_groups_and_orders(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_curated_list(CURATED_URL, session=session)

    assert [g["key"] for g in outcome.value] == ["mutation", "lineage"]
    lineages = outcome.value[1]["values"]
    assert [d["mutation_name"] for d in lineages] == ["B.1.1.7", "B.1.351", "P.2"]
    assert session.calls[0][0] == CURATED_URL


def test_get_curated_metadata(fake_session):
    session = fake_session(genomics_routes())
    assert queries.get_curated_metadata(CURATED_URL, "P.2", session=session).value["variantType"] == "Variant of Interest"
    assert queries.get_curated_metadata(CURATED_URL, "X.1", session=session).value is None


def test_get_prevalence_all_lineages_is_wide(fake_session):
    payload = {
        "results": [
            {"date": "2020-03-10", "lineage": "b.1", "prevalence_rolling": 1.0},
            {"date": "2021-01-02", "lineage": "b.1", "prevalence_rolling": 0.6},
            {"date": "2021-01-01", "lineage": "b.1", "prevalence_rolling": 0.7},
            {"date": "2021-01-01", "lineage": "other", "prevalence_rolling": 0.3},
        ]
    }
    session = fake_session({"prevalence-by-country-all-lineages": payload})

    outcome = queries.get_prevalence_all_lineages(GENOMICS_URL, "Canada", "country", 0.05, 5, 60, session=session)

    assert outcome.value == [
        {"date_time": date(2021, 1, 1), "B.1": 0.7, "Other": 0.3},
        {"date_time": date(2021, 1, 2), "B.1": 0.6, "Other": 0},
    ]
    params = session.calls[0][1]
    assert params["country"] == "Canada"
    assert "cumulative" not in params


def test_get_report_data_assembles_every_part(fake_session):
    session = fake_session(genomics_routes())
    flags = LoadingFlags()
    locations = [{"name": "Canada", "type": "country"}]

    outcome = reports.get_report_data(
        GENOMICS_URL, CURATED_URL, locations, None, "B.1.351", queries.WORLDWIDE, None,
        session=session, flags=flags,
    )

    assert outcome.ok
    report = outcome.value
    assert report.date_updated.date_updated == "4 March 2021"
    assert [r["name"] for r in report.new_today] == ["Worldwide", "Canada"]
    assert len(report.longitudinal) == 2
    assert report.global_prev["proportion_formatted"] == "12%"
    assert [r["name"] for r in report.loc_prev] == ["Canada"]
    assert report.countries == ["United Kingdom", "Isle of Man"]
    assert report.md["variantType"] == "Variant of Concern"
    # Curated mutations win over the computed characteristic ones.
    assert report.mutations == [{"mutation": "s:e484k"}]
    assert report.mutation_details == []
    assert not flags.get(reports.REPORT_LOADING)


def test_get_report_data_uses_characteristic_mutations_without_curated_ones(fake_session):
    session = fake_session(genomics_routes())

    outcome = reports.get_report_data(
        GENOMICS_URL, CURATED_URL, [], None, "B.1.1.7", queries.WORLDWIDE, None, session=session
    )

    assert [m["mutation"] for m in outcome.value.mutations] == ["s:n501y", "orf1a:s3675-"]
    assert outcome.value.mutations[0]["codon_num"] == 501


def test_get_report_data_degrades_member_by_member(fake_session):
    session = fake_session(genomics_routes(**{"global-prevalence": FakeResponse(status_code=502)}))
    flags = LoadingFlags()

    outcome = reports.get_report_data(
        GENOMICS_URL, CURATED_URL, [], "S:E484K", None, queries.WORLDWIDE, None, session=session, flags=flags
    )

    assert outcome.ok
    assert outcome.degraded
    assert outcome.value.global_prev is None
    assert outcome.value.longitudinal == []
    assert outcome.value.mutation_details[0]["codon_num"] == 484
    assert len(outcome.absorbed) == 2
    assert not flags.get(reports.REPORT_LOADING)


def test_get_report_list_adds_lineages_to_curated_mutations(fake_session):
    session = fake_session(genomics_routes())

    outcome = reports.get_report_list(GENOMICS_URL, CURATED_URL, session=session)

    assert outcome.value.date_updated is not None
    mutation_group = outcome.value.md[0]
    assert mutation_group["key"] == "mutation"
    assert mutation_group["values"][0]["lineages"] == ["B.1.351"]
    params = session.calls_to("mutations-by-lineage")[0][1]
    assert params["mutations"] == "s:e484k"


def test_get_basic_location_report_data(fake_session):
    session = fake_session(genomics_routes())

    outcome = reports.get_basic_location_report_data(GENOMICS_URL, CURATED_URL, "Canada", "country", session=session)

    assert outcome.value.total == "1,234,567"
    assert [c["label"] for c in outcome.value.curated] == ["B.1.1.7", "B.1.351", "P.2"]
    assert outcome.value.curated[0]["query"] == {"pangolin_lineage": "B.1.1.7"}
    assert outcome.value.curated[0]["route"] == {"pango": "B.1.1.7"}


def test_get_location_report_data_domain(fake_session):
    routes = {
        "prevalence-by-country-all-lineages": lambda params: (
            {"results": [{"lineage": "b.1.1.7", "prevalence": 0.6}, {"lineage": "other", "prevalence": 0.4}]}
            if params.get("cumulative") == "true"
            else {
                "results": [
                    {"date": "2021-01-01", "lineage": "p.1", "prevalence_rolling": 0.2},
                    {"date": "2021-01-01", "lineage": "other", "prevalence_rolling": 0.8},
                ]
            }
        )
    }
    session = fake_session(routes)
    flags = LoadingFlags()

    outcome = reports.get_location_report_data(GENOMICS_URL, "Canada", "country", 0.05, 5, 60, session=session, flags=flags)

    assert outcome.value.most_recent_lineages == [{"B.1.1.7": 0.6, "Other": 0.4}]
    assert outcome.value.lineage_domain == ["Other", "B.1.1.7", "P.1"]
    assert not flags.get(reports.LOCATION_REPORT_LOADING)


def test_lineage_domain_with_no_data():
    assert reports.lineage_domain([], []) == ["Other"]


def test_get_location_table_orders_and_nests(fake_session):
    prevalences = {"A": 0.1, "B": 0.5, "C": 0.3}

    def prevalence(params):
        return {"results": {"global_prevalence": prevalences[params["pangolin_lineage"]], "lineage_count": 1}}

    session = fake_session({"prevalence-by-location": prevalence})
    mutations = [
        {"label": "A", "query": {"pangolin_lineage": "A"}, "variant_type": "VOI"},
        {"label": "B", "query": {"pangolin_lineage": "B"}, "variant_type": "VOC"},
        {"label": "C", "query": {"pangolin_lineage": "C"}, "variant_type": "VOI"},
    ]

    outcome = reports.get_location_table(GENOMICS_URL, "Canada", "country", mutations, session=session)

    assert [g["key"] for g in outcome.value] == ["VOC", "VOI"]
    assert [r["label"] for r in outcome.value[1]["values"]] == ["C", "A"]


def test_compare_lineages_merges_by_mutation(fake_session):
    def characteristic(params):
        if params["pangolin_lineage"] == "B.1.1.7":
            return {"results": [
                {"mutation": "s:n501y", "gene": "S", "codon_num": 501, "prevalence": 0.99},
                {"mutation": "s:p681h", "gene": "S", "codon_num": 681, "prevalence": 0.98},
            ]}
        return {"results": [
            {"mutation": "s:n501y", "gene": "S", "codon_num": 501, "prevalence": 0.97},
            {"mutation": "s:e484k", "gene": "S", "codon_num": 484, "prevalence": 0.95},
        ]}

    session = fake_session({"lineage-mutations": characteristic})

    outcome = reports.compare_lineages(GENOMICS_URL, ["B.1.1.7", "B.1.351", "B.1.1.7"], session=session)

    comparison = outcome.value
    assert comparison.lineages == ["B.1.1.7", "B.1.351"]
    assert [m["mutation"] for m in comparison.mutations] == ["s:e484k", "s:n501y", "s:p681h"]
    assert comparison.mutations[0]["prevalence"] == {"B.1.1.7": 0, "B.1.351": 0.95}
    assert comparison.shared == ["s:n501y"]
    assert session.calls_to("lineage-mutations")[0][1]["frequency"] == 0.75


def test_get_sequencing_gaps(fake_session):
    def submitted(params):
        day = {"Canada": "2021-03-08"}.get(params.get("country"), "2021-03-05")
        return {"results": [{"date": day, "date_count": 3}]}

    def collected(params):
        if params.get("country") == "Mexico":
            return {"results": []}
        return {"results": [{"date": "2021-03-01"}]}

    session = fake_session(
        genomics_routes(**{"most-recent-submission-date": submitted, "most-recent-collection-date": collected})
    )
    locations = [
        {"name": "Worldwide", "type": "world"},
        {"name": "Canada", "type": "country"},
        {"name": "Mexico", "type": "country"},
    ]

    outcome = reports.get_sequencing_gaps(GENOMICS_URL, locations, lineage="B.1.1.7", session=session)

    gaps = outcome.value
    assert [g.name for g in gaps] == ["Canada", "Worldwide", "Mexico"]
    assert [g.lag_days for g in gaps] == [7, 4, None]
    assert gaps[0].total == "1,234,567"
    assert gaps[0].last_collected == date(2021, 3, 1)
    assert outcome.degraded
    collection_params = session.calls_to("most-recent-collection-date")
    assert all(c[1]["pangolin_lineage"] == "B.1.1.7" for c in collection_params)


def test_get_location_maps(fake_session):
    session = fake_session(genomics_routes())
    mutations = [{"label": "B.1.1.7", "query": {"pangolin_lineage": "B.1.1.7"}, "variant_type": "VOC"}]

    outcome = reports.get_location_maps(GENOMICS_URL, "United Kingdom", "country", mutations, ndays=30, session=session)

    assert outcome.value[0]["key"] == "B.1.1.7"
    assert outcome.value[0]["values"][0]["location_id"] == "UnitedKingdom"
    assert session.calls_to("lineage-by-division-most-recent")[0][1]["ndays"] == 30


def test_get_sequence_count_for_location(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_sequence_count(GENOMICS_URL, "Canada", "country", session=session)

    assert outcome.value == "1,234,567"
    assert session.calls[0][1]["country"] == "Canada"


def test_get_most_recent_collection(fake_session):
    session = fake_session(genomics_routes())

    outcome = queries.get_most_recent_collection(GENOMICS_URL, {"pangolin_lineage": "P.1"}, session=session)

    assert outcome.value["date_time"] == date(2021, 3, 1)
    assert outcome.value["date_formatted"] == "1 March 2021"


def test_find_names_apply_casing(fake_session):
    session = fake_session(
        {
            "country": {"results": [{"name": "united states", "id": "USA"}]},
            "lineage": {"results": [{"name": "b.1.1.7"}]},
        }
    )

    assert queries.find_country(GENOMICS_URL, "united", session=session).value[0]["name"] == "United States"
    assert queries.find_pangolin(GENOMICS_URL, "b.1", session=session).value[0]["name"] == "B.1.1.7"
    assert session.calls[0][1]["name"] == "*united*"
    assert not queries.find_division(GENOMICS_URL, "ont", session=session).ok


def test_get_lineage_resources(fake_session):
    session = fake_session({"query": {"total": 1, "hits": [{"name": "paper", "date": "2021-02-03"}]}})

    outcome = queries.get_lineage_resources("https://resources.test/resources/", '"B.1.1.7"', 10, 0, session=session)

    assert outcome.value["total"] == 1
    assert outcome.value["resources"][0]["date_formatted"] == "3 February 2021"
    assert session.calls[0][1]["sort"] == "-date"


def test_update_location_data(fake_session):
    session = fake_session(genomics_routes())
    flags = LoadingFlags()

    outcome = reports.update_location_data(
        GENOMICS_URL, None, "B.1.1.7", [{"name": "Canada", "type": "country"}], "Canada", "country",
        session=session, flags=flags,
    )

    assert len(outcome.value.longitudinal) == 2
    assert outcome.value.by_country[0]["location_id"] == "UnitedKingdom"
    assert [r["name"] for r in outcome.value.loc_prev] == ["Canada"]
    assert not flags.get(reports.REPORT_LOADING)


def test_get_all_temporal_prevalences(fake_session):
    session = fake_session(genomics_routes())
    mutations = [
        {"label": "B.1.1.7", "query": {"pangolin_lineage": "B.1.1.7"}},
        {"label": "P.1", "query": {"pangolin_lineage": "P.1"}},
    ]

    outcome = reports.get_all_temporal_prevalences(GENOMICS_URL, "Canada", "country", mutations, session=session)

    assert [m["label"] for m in outcome.value] == ["B.1.1.7", "P.1"]
    assert outcome.value[0]["data"][0]["date_time"] == date(2021, 3, 1)
    assert {c[1]["pangolin_lineage"] for c in session.calls} == {"B.1.1.7", "P.1"}


def test_get_report_list_tolerates_malformed_curated_mutation(fake_session):
    curated = [{"reportType": "mutation", "mutation_name": "E484K", "mutations": None}]
    session = fake_session(genomics_routes(**{"curated_mutations.json": curated}))
    flags = LoadingFlags()

    outcome = reports.get_report_list(GENOMICS_URL, CURATED_URL, session=session, flags=flags)

    assert outcome.ok
    assert outcome.degraded
    assert isinstance(outcome.absorbed[0], ShapeError)
    assert outcome.value.md[0]["values"] == [{**curated[0], "lineages": []}]
    assert session.calls_to("mutations-by-lineage") == []
    assert not flags.get(reports.REPORT_LOADING)


def test_get_basic_location_report_data_tolerates_malformed_curated_lineage(fake_session):
    curated = [{"reportType": "lineage", "variantType": "Variant of Concern"}]
    session = fake_session(genomics_routes(**{"curated_mutations.json": curated}))

    outcome = reports.get_basic_location_report_data(GENOMICS_URL, CURATED_URL, "Canada", "country", session=session)

    assert outcome.ok
    assert outcome.value.curated == []
    assert outcome.value.total == "1,234,567"
    assert isinstance(outcome.absorbed[0], ShapeError)


def test_get_sequencing_gaps_puts_unknown_lags_after_negative_ones(fake_session):
    def submitted(params):
        day = {"Canada": "2021-02-25"}.get(params.get("country"), "2021-03-05")
        return {"results": [{"date": day, "date_count": 3}]}

    def collected(params):
        if params.get("country") == "Mexico":
            return {"results": []}
        return {"results": [{"date": "2021-03-01"}]}

    session = fake_session(
        genomics_routes(**{"most-recent-submission-date": submitted, "most-recent-collection-date": collected})
    )
    locations = [{"name": "Mexico", "type": "country"}, {"name": "Canada", "type": "country"}]

    outcome = reports.get_sequencing_gaps(GENOMICS_URL, locations, lineage="B.1.1.7", session=session)

    assert [g.name for g in outcome.value] == ["Worldwide", "Canada", "Mexico"]
    assert [g.lag_days for g in outcome.value] == [4, -4, None]
