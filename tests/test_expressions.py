"""
Expression tests: template parsing, evaluation and reference extraction.
"""
import pytest

from converge.errors import UnresolvedReferenceError
from converge.expressions import (
    SPLAT,
    UNKNOWN,
    EvalContext,
    ExpressionError,
    ResourceRef,
    evaluate_template,
    evaluate_value,
    has_expressions,
    parse_template,
    references,
)


def _ctx(**kwargs) -> EvalContext:
    kwargs.setdefault("variables", {"azs": ["us-east-1a", "us-east-1b"], "name": "web", "n": 3})
    return EvalContext(**kwargs)


# --------------------------------------------------------- templates
class TestTemplates:
    def test_plain_string_is_literal(self):
        assert parse_template("10.0.0.0/16").is_literal

    def test_single_expression(self):
        tpl = parse_template("${var.name}")
        assert tpl.is_single
        assert not tpl.is_literal

    def test_mixed_template(self):
        tpl = parse_template("10.0.${count.index}.0/24")
        assert len(tpl.parts) == 3
        assert not tpl.is_single

    def test_escaped_interpolation_stays_literal(self):
        assert evaluate_template("$${not.an.expr}", _ctx()) == "${not.an.expr}"

    def test_unterminated_interpolation(self):
        with pytest.raises(ExpressionError):
            parse_template("${var.name")

    def test_has_expressions_nested(self):
        assert has_expressions({"tags": {"Name": "${var.name}"}})
        assert has_expressions(["a", "${var.n}"])
        assert not has_expressions({"cidr_block": "10.0.0.0/16", "count": 2})


# --------------------------------------------------------- evaluation
class TestEvaluate:
    def test_single_expression_keeps_native_type(self):
        assert evaluate_template("${var.n}", _ctx()) == 3
        assert evaluate_template("${var.azs}", _ctx()) == ["us-east-1a", "us-east-1b"]

    def test_interpolation_renders_strings(self):
        assert evaluate_template("10.0.${count.index}.0/24", _ctx(count_index=1)) == "10.0.1.0/24"

    def test_count_index_without_count(self):
        with pytest.raises(ExpressionError):
            evaluate_template("${count.index}", _ctx())

    def test_undefined_variable(self):
        with pytest.raises(UnresolvedReferenceError) as exc:
            evaluate_template("${var.missing}", _ctx(address="aws_vpc.main"))
        assert exc.value.target == "var.missing"
        assert exc.value.address == "aws_vpc.main"

    def test_functions(self):
        ctx = _ctx(count_index=3)
        assert evaluate_template("${length(var.azs)}", ctx) == 2
        assert evaluate_template("${element(var.azs, count.index)}", ctx) == "us-east-1b"
        assert evaluate_template('${join(",", var.azs)}', ctx) == "us-east-1a,us-east-1b"
        assert evaluate_template("${upper(var.name)}", ctx) == "WEB"
        assert evaluate_template('${lower("ABC")}', ctx) == "abc"
        assert evaluate_template('${format("%s-%d", var.name, var.n)}', ctx) == "web-3"

    def test_concat(self):
        ctx = _ctx(variables={"a": [1], "b": [2, 3]})
        assert evaluate_template("${concat(var.a, var.b)}", ctx) == [1, 2, 3]

    def test_unknown_function(self):
        with pytest.raises(ExpressionError):
            evaluate_template("${cidrsubnet(var.name)}", _ctx())

    def test_variable_index_and_attribute(self):
        ctx = _ctx(variables={"azs": ["a", "b"], "tags": {"Name": "web"}})
        assert evaluate_template("${var.azs[1]}", ctx) == "b"
        assert evaluate_template("${var.tags.Name}", ctx) == "web"

    def test_resource_lookup(self):
        seen = []

        def lookup(ref):
            seen.append(ref)
            return "vpc-123"

        assert evaluate_template("${aws_vpc.main.id}", _ctx(lookup=lookup)) == "vpc-123"
        assert seen == [ResourceRef("aws_vpc.main", None, "id")]

    def test_resource_lookup_nested_attribute(self):
        ctx = _ctx(lookup=lambda ref: {"Name": "web-vpc"})
        assert evaluate_template("${aws_vpc.main.tags.Name}", ctx) == "web-vpc"

    def test_splat_lookup(self):
        ctx = _ctx(lookup=lambda ref: ["subnet-1", "subnet-2"])
        assert evaluate_template("${aws_subnet.public[*].id}", ctx) == ["subnet-1", "subnet-2"]

    def test_unknown_propagates(self):
        ctx = _ctx(lookup=lambda ref: UNKNOWN)
        assert evaluate_template("${aws_vpc.main.id}", ctx) is UNKNOWN
        assert evaluate_template("prefix-${aws_vpc.main.id}", ctx) is UNKNOWN
        assert evaluate_template("${length(aws_subnet.public[*].id)}", ctx) is UNKNOWN

    def test_evaluate_value_recurses(self):
        value = {"tags": {"Name": "${var.name}-vpc"}, "ports": [80, "${var.n}"]}
        assert evaluate_value(value, _ctx()) == {"tags": {"Name": "web-vpc"}, "ports": [80, 3]}

    def test_resource_reference_without_context(self):
        with pytest.raises(ExpressionError):
            evaluate_template("${aws_vpc.main.id}", _ctx())


# --------------------------------------------------------- static analysis
class TestReferences:
    def test_simple_reference(self):
        refs = references("${aws_vpc.main.id}", _ctx())
        assert refs == [ResourceRef("aws_vpc.main", None, "id")]

    def test_indexed_reference_uses_count_index(self):
        refs = references("${aws_subnet.public[count.index].id}", _ctx(count_index=1))
        assert refs[0].key == 1
        assert refs[0].address == "aws_subnet.public[1]"

    def test_splat_forms(self):
        for text in ("${aws_subnet.public[*].id}", "${aws_subnet.public.*.id}"):
            refs = references(text, _ctx())
            assert refs == [ResourceRef("aws_subnet.public", SPLAT, "id")]

    def test_references_inside_calls_and_collections(self):
        value = {
            "a": "${element(aws_subnet.public[*].id, 0)}",
            "b": ["${aws_security_group.web.id}"],
        }
        addresses = [r.base for r in references(value, _ctx())]
        assert addresses == ["aws_subnet.public", "aws_security_group.web"]

    def test_variables_are_not_references(self):
        assert references("${var.name}-${count.index}", _ctx(count_index=0)) == []

    def test_undefined_variable_is_reported(self):
        with pytest.raises(UnresolvedReferenceError):
            references("${var.nope}", _ctx())

    def test_reference_must_name_attribute(self):
        with pytest.raises(ExpressionError):
            references("${aws_vpc.main}", _ctx())
