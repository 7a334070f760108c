"""Tests for rendering operation sequences into source text."""

import unittest

from shadowfuzz.render import Renderer, RenderTemplate
from shadowfuzz.types import OperationCall


class TestRenderer(unittest.TestCase):
    """Test the default and custom templates."""

    def test_default_template(self):
        source = Renderer().render(
            "Vec<i32>",
            OperationCall("new", (), 100),
            [OperationCall("push", ("1",), 100), OperationCall("pop", (), 250)],
        )
        self.assertEqual(
            source,
            "fun main() {\n"
            "    let obj = Vec<i32>::new();  // Timeout: <100ms\n"
            "    obj.push(1);  // Timeout: <100ms\n"
            "    obj.pop();  // Timeout: <250ms\n"
            "}\n",
        )

    def test_empty_sequence_renders_constructor_only(self):
        source = Renderer().render("Logger", OperationCall("create", (), 100), [])
        self.assertEqual(source.count("obj."), 0)
        self.assertIn("Logger::create()", source)

    def test_custom_template_keeps_braces(self):
        template = RenderTemplate(
            prologue="{\n",
            constructor="let o = new $type_name(${args});\n",
            call="o.$name(${args}); // #$index\n",
            epilogue="}\n",
            separator=",",
        )
        source = Renderer(template).render(
            "Map", OperationCall("new"), [OperationCall("put", ("1", "2"))]
        )
        self.assertEqual(source, "{\nlet o = new Map();\no.put(1,2); // #1\n}\n")

    def test_template_from_dict_rejects_unknown_fields(self):
        with self.assertRaises(ValueError):
            RenderTemplate.from_dict({"header": "x"})
        template = RenderTemplate.from_dict({"epilogue": "end\n"})
        self.assertEqual(template.epilogue, "end\n")


class TestOperationCall(unittest.TestCase):
    def test_str_and_dict(self):
        call = OperationCall("push", ("1", "2"), 50)
        self.assertEqual(str(call), "push(1, 2)")
        self.assertEqual(OperationCall.from_dict(call.to_dict()), call)


if __name__ == "__main__":
    unittest.main()
