import pytest

from merge_engine import (
    EmptyKeyPolicy,
    InvalidKey,
    ResultSet,
    TabularDataset,
    default_key,
    intersect_columns,
    merge_datasets,
    normalize_key,
)


@pytest.fixture
def people():
    """Primary dataset"""
    return TabularDataset([
        {"id": "1", "name": "Al"},
        {"id": "2", "name": "Bo"},
    ], name="people.csv")


@pytest.fixture
def cities():
    """Secondary dataset"""
    return TabularDataset([{"id": "2", "city": "NYC"}], name="cities.csv")


class TestIntersectColumns:
    def test_common_columns(self, people, cities):
        assert intersect_columns(people, cities) == ["id"]
        assert default_key(intersect_columns(people, cities)) == "id"

    def test_keeps_primary_order(self):
        a = TabularDataset([{"c": 1, "b": 2, "a": 3}])
        b = TabularDataset([{"a": 1, "b": 2, "c": 3}])
        assert intersect_columns(a, b) == ["c", "b", "a"]

    def test_empty_dataset_has_no_common_columns(self, people):
        assert intersect_columns(people, TabularDataset([])) == []
        assert intersect_columns(TabularDataset([]), people) == []
        assert default_key([]) is None

    def test_only_first_row_defines_fields(self):
        a = TabularDataset([{"id": "1"}, {"id": "2", "email": "x@test.com"}])
        b = TabularDataset([{"id": "1", "email": "y@test.com"}])
        assert intersect_columns(a, b) == ["id"]


class TestNormalizeKey:
    @pytest.mark.parametrize("value,expected", [
        (None, ""),
        (float("nan"), ""),
        ("  42 ", "42"),
        (42, "42"),
        (42.0, "42"),
        (4.5, "4.5"),
        ("Abc", "Abc"),
        ("", ""),
        (0, "0"),
    ])
    def test_normalize(self, value, expected):
        assert normalize_key(value) == expected

    def test_case_sensitive(self):
        assert normalize_key("abc") != normalize_key("ABC")


class TestMergeDatasets:
    def test_example_scenario(self, people, cities):
        result = merge_datasets(people, cities, "id")

        assert result.merged_rows == [{"id": "2", "name": "Bo", "city": "NYC"}]
        assert result.unmatched_rows == [{"id": "1", "name": "Al"}]
        assert result.merged_count == 1
        assert result.unmatched_count == 1

    def test_counts_cover_primary(self):
        a = TabularDataset([{"k": str(i % 4), "v": i} for i in range(10)])
        b = TabularDataset([{"k": "1"}, {"k": "3"}, {"k": "9"}])
        result = merge_datasets(a, b, "k")

        assert result.merged_count + result.unmatched_count == len(a)
        assert [row["v"] for row in result.merged_rows] == [1, 3, 5, 7, 9]
        assert [row["v"] for row in result.unmatched_rows] == [0, 2, 4, 6, 8]

    def test_secondary_overrides_primary(self):
        a = TabularDataset([{"id": "7", "name": "Al", "city": "LA", "age": 30}])
        b = TabularDataset([{"id": "7", "city": "NYC", "zip": "10001"}])
        result = merge_datasets(a, b, "id")

        assert result.merged_rows == [{"id": "7", "name": "Al", "city": "NYC", "age": 30, "zip": "10001"}]

    def test_absent_secondary_field_keeps_primary_value(self):
        a = TabularDataset([{"id": 1, "city": "LA"}])
        b = TabularDataset([{"id": 1, "city": "Boston"}, {"id": 2}])
        a2 = TabularDataset([{"id": 2, "city": "LA"}])

        assert merge_datasets(a, b, "id").merged_rows == [{"id": 1, "city": "Boston"}]
        assert merge_datasets(a2, b, "id").merged_rows == [{"id": 2, "city": "LA"}]

    def test_first_match_wins(self):
        a = TabularDataset([{"id": "1", "name": "Al"}])
        b = TabularDataset([
            {"id": "1", "city": "first"},
            {"id": " 1", "city": "second"},
        ])
        result = merge_datasets(a, b, "id")

        assert result.merged_rows == [{"id": "1", "name": "Al", "city": "first"}]

    def test_duplicate_primary_rows_each_match(self):
        a = TabularDataset([{"id": "1", "n": 1}, {"id": "1", "n": 2}])
        b = TabularDataset([{"id": "1", "city": "NYC"}])
        result = merge_datasets(a, b, "id")

        assert [row["n"] for row in result.merged_rows] == [1, 2]
        assert all(row["city"] == "NYC" for row in result.merged_rows)

    def test_normalized_key_matches_number(self):
        a = TabularDataset([{"id": "  42 ", "name": "Al"}])
        b = TabularDataset([{"id": 42, "city": "NYC"}])
        result = merge_datasets(a, b, "id")

        assert result.merged_count == 1
        assert result.merged_rows[0]["id"] == 42
        assert result.merged_rows[0]["name"] == "Al"

    def test_empty_primary(self, cities):
        result = merge_datasets(TabularDataset([]), cities, "id")
        assert result.merged_rows == []
        assert result.unmatched_rows == []
        assert result.merged_count == 0
        assert result.unmatched_count == 0

    def test_empty_secondary(self, people):
        result = merge_datasets(people, TabularDataset([]), "id")
        assert result.merged_rows == []
        assert result.unmatched_rows == people.rows
        assert result.unmatched_count == 2

    def test_idempotent(self, people, cities):
        first = merge_datasets(people, cities, "id")
        second = merge_datasets(people, cities, "id")
        assert first == second

    def test_inputs_not_mutated(self, people, cities):
        before_a = [dict(row) for row in people]
        before_b = [dict(row) for row in cities]
        result = merge_datasets(people, cities, "id")
        result.merged_rows[0]["name"] = "changed"
        result.unmatched_rows[0]["name"] = "changed"

        assert people.rows == before_a
        assert cities.rows == before_b

    def test_empty_key_rejected(self, people, cities):
        with pytest.raises(InvalidKey):
            merge_datasets(people, cities, "")
        with pytest.raises(InvalidKey):
            merge_datasets(people, cities, None)

    def test_unknown_key_rejected(self, people, cities):
        with pytest.raises(InvalidKey, match="not found in primary dataset"):
            merge_datasets(people, cities, "email")

    def test_key_missing_from_secondary_rejected(self):
        a = TabularDataset([{"id": "", "name": "Al"}, {"id": "2", "name": "Bo"}])
        b = TabularDataset([{"zip": "10001", "city": "NYC"}])
        with pytest.raises(InvalidKey, match="not found in secondary dataset"):
            merge_datasets(a, b, "id")


class TestEmptyKeyPolicy:
    @pytest.fixture
    def blank_keys(self):
        a = TabularDataset([{"id": "", "name": "Al"}, {"id": None, "name": "Bo"}, {"name": "Cy", "id": "3"}])
        b = TabularDataset([{"id": "  ", "city": "NYC"}, {"id": "3", "city": "LA"}])
        return a, b

    def test_match_policy_pairs_blank_keys(self, blank_keys):
        a, b = blank_keys
        result = merge_datasets(a, b, "id")

        assert result.empty_key_policy is EmptyKeyPolicy.MATCH
        assert result.merged_count == 3
        assert result.merged_rows[0]["city"] == "NYC"
        assert result.merged_rows[1]["city"] == "NYC"

    def test_never_policy_leaves_blank_keys_unmatched(self, blank_keys):
        a, b = blank_keys
        result = merge_datasets(a, b, "id", EmptyKeyPolicy.NEVER)

        assert result.merged_rows == [{"name": "Cy", "id": "3", "city": "LA"}]
        assert [row["name"] for row in result.unmatched_rows] == ["Al", "Bo"]

    def test_policy_accepts_string(self, blank_keys):
        a, b = blank_keys
        result = merge_datasets(a, b, "id", "never")
        assert result.empty_key_policy is EmptyKeyPolicy.NEVER


class TestResultSet:
    def test_preview_and_summary(self):
        result = ResultSet(
            key="id",
            merged_rows=[{"id": str(i)} for i in range(15)],
            unmatched_rows=[{"id": "x"}],
        )

        assert len(result.preview()) == 10
        assert result.preview(3) == [{"id": "0"}, {"id": "1"}, {"id": "2"}]
        assert result.preview_unmatched() == [{"id": "x"}]
        assert result.summary() == {
            "key": "id",
            "empty_key_policy": "match",
            "rows_a": 16,
            "merged_count": 15,
            "unmatched_count": 1,
        }

    def test_warnings(self):
        assert ResultSet(key="id").warnings() == []
        result = ResultSet(key="id", unmatched_rows=[{"id": "1"}, {"id": "2"}])
        assert result.warnings() == ["2 rows from primary file had no match in the secondary file."]
