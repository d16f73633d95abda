"""
Tests for the clause parser.
"""
import pytest

from queryflow.clause_parser import ClauseParser, parse, split_top_level
from queryflow.errors import SQLParseError


class TestSplitTopLevel:
    def test_respects_parentheses_and_quotes(self):
        parts = split_top_level("a, COALESCE(b, c), 'x,y', \"q,r\"")
        assert parts == ['a', 'COALESCE(b, c)', "'x,y'", '"q,r"']

    def test_empty_text(self):
        assert split_top_level('') == []


class TestClauseExtraction:
    def test_simple_query(self):
        query = parse("SELECT * FROM users WHERE age > 21 ORDER BY name")

        assert query.select.clause_text == "SELECT *"
        assert query.select.items[0].is_star
        assert query.from_clause.clause_text == "FROM users"
        assert query.from_clause.sources[0].name == "users"
        assert query.where.clause_text == "WHERE age > 21"
        assert query.where.predicate == "age > 21"
        assert query.order_by.keys[0].expression == "name"
        assert not query.order_by.keys[0].descending
        assert query.group_by is None and query.having is None
        assert query.limit is None and query.offset is None

    def test_clause_text_is_verbatim(self):
        query = parse("select  u.name\nfrom users   u\nwhere  u.age>21")

        assert query.select.clause_text == "select  u.name"
        assert query.from_clause.clause_text == "from users   u"
        assert query.where.clause_text == "where  u.age>21"

    def test_select_aliases(self):
        query = parse("SELECT name AS n, age + 1 next_age, COUNT(*) FROM users GROUP BY name, age")
        items = query.select.items

        assert (items[0].expression, items[0].alias) == ("name", "n")
        assert (items[1].expression, items[1].alias) == ("age + 1", "next_age")
        assert (items[2].expression, items[2].alias) == ("COUNT(*)", None)

    def test_group_by_having(self):
        query = parse(
            "SELECT department_id, COUNT(*) FROM users "
            "GROUP BY department_id HAVING COUNT(*) > 1"
        )
        assert query.group_by.columns == ("department_id",)
        assert query.having.predicate == "COUNT(*) > 1"
        assert query.having.clause_text == "HAVING COUNT(*) > 1"

    def test_joins(self):
        query = parse(
            "SELECT * FROM users u "
            "LEFT OUTER JOIN departments d ON u.department_id = d.id "
            "JOIN projects p USING (id) "
            "CROSS JOIN regions"
        )
        left, inner, cross = query.joins

        assert left.join_type == "LEFT"
        assert left.table.name == "departments" and left.table.alias == "d"
        assert left.condition == "u.department_id = d.id"
        assert left.clause_text == "LEFT OUTER JOIN departments d ON u.department_id = d.id"
        assert inner.join_type == "INNER"
        assert inner.using == "(id)"
        assert cross.join_type == "CROSS"
        assert cross.condition is None
        assert [ref.qualifier for ref in query.sources] == ["u", "d", "p", "regions"]

    def test_comma_separated_sources(self):
        query = parse("SELECT * FROM users u, departments WHERE u.department_id = departments.id")
        assert [ref.name for ref in query.from_clause.sources] == ["users", "departments"]
        assert query.from_clause.sources[0].alias == "u"

    def test_order_by_directions(self):
        query = parse("SELECT * FROM users ORDER BY age DESC NULLS FIRST, name ASC, 2")
        keys = query.order_by.keys

        assert keys[0].expression == "age" and keys[0].descending and keys[0].nulls_first
        assert keys[1].expression == "name" and not keys[1].descending and keys[1].nulls_first is None
        assert keys[2].is_ordinal

    def test_limit_offset(self):
        query = parse("SELECT * FROM users LIMIT 2 OFFSET 1")
        assert query.limit.count == 2
        assert query.offset.count == 1
        assert query.limit.clause_text == "LIMIT 2"
        assert query.offset.clause_text == "OFFSET 1"

    def test_distinct(self):
        query = parse("SELECT DISTINCT department_id FROM users")
        assert query.select.distinct
        assert query.select.distinct_text == "DISTINCT"
        assert query.select.list_text == "department_id"

    def test_subquery_in_where_does_not_split(self):
        query = parse(
            "SELECT name FROM users WHERE department_id IN "
            "(SELECT id FROM departments WHERE budget > 100 ORDER BY id) ORDER BY name"
        )
        assert query.where.predicate.startswith("department_id IN (SELECT id FROM departments")
        assert query.where.predicate.endswith("ORDER BY id)")
        assert query.order_by.body == "name"
        assert len(query.from_clause.sources) == 1

    def test_trailing_semicolon_and_comment(self):
        query = parse("SELECT * FROM users WHERE age > 21; -- adults")
        assert query.where.clause_text == "WHERE age > 21"

    def test_source_sql(self):
        query = parse("SELECT * FROM users u JOIN departments d ON u.department_id = d.id WHERE u.age > 1")
        assert query.source_sql(0) == "FROM users u"
        assert query.source_sql() == "FROM users u\nJOIN departments d ON u.department_id = d.id"

    def test_fresh_parser_is_reusable(self):
        parser = ClauseParser()
        first = parser.parse("SELECT id FROM users")
        second = parser.parse("SELECT name FROM departments")
        assert first.from_clause.sources[0].name == "users"
        assert second.from_clause.sources[0].name == "departments"


class TestParseErrors:
    @pytest.mark.parametrize("sql", [
        "",
        "   ",
        "DROP TABLE users",
        "INSERT INTO users VALUES (1, 'a', 1, 1)",
        "SELECT 1",
        "SELECT * FROM users; SELECT * FROM departments",
        "WITH t AS (SELECT 1) SELECT * FROM t",
        "SELECT id FROM users UNION SELECT id FROM departments",
        "SELECT * FROM (SELECT * FROM users) AS sub",
        "SELECT * FROM users JOIN departments",
        "SELECT DISTINCT ON (age) name FROM users",
        "SELECT * FROM users LIMIT ALL",
        "SELECT * FROM users WHERE",
    ])
    def test_rejected(self, sql):
        with pytest.raises(SQLParseError):
            parse(sql)

    def test_non_select_message(self):
        with pytest.raises(SQLParseError) as excinfo:
            parse("DROP TABLE users")
        assert "DROP" in excinfo.value.message
        assert excinfo.value.code == "SQL_PARSE_ERROR"

    @pytest.mark.parametrize("sql", [
        "SELECT name, ROW_NUMBER() OVER (ORDER BY id) AS rn FROM users WHERE age > 21",
        "SELECT name, SUM(age) OVER (PARTITION BY department_id) FROM users",
        "SELECT name FROM users ORDER BY RANK() OVER (ORDER BY age)",
    ])
    def test_window_functions_rejected(self, sql):
        with pytest.raises(SQLParseError) as excinfo:
            parse(sql)
        assert "OVER" in excinfo.value.message

    def test_window_function_inside_where_subquery(self):
        query = parse(
            "SELECT name FROM users WHERE id IN "
            "(SELECT id FROM (SELECT id, ROW_NUMBER() OVER (ORDER BY age) AS rn FROM users) t WHERE rn = 1)"
        )
        assert query.where is not None
