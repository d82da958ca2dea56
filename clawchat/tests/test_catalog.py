"""Tests for model catalogue parsing."""

import json
import unittest

from clawchat.client.catalog import catalog_entries, merge_models, parse_config_providers


CONFIG = {
    "models": {
        "providers": {
            "anthropic": {"models": [
                {"id": "claude-sonnet", "name": "Sonnet", "contextWindow": 200000, "reasoning": True},
                {"name": "missing id"},
            ]},
            "local": {"baseUrl": "http://localhost:11434"},
        },
    },
    "auth": {"profiles": {
        "anthropic:default": {"provider": "anthropic"},
        "openai:default": {"provider": "openai"},
    }},
}


class TestParseConfigProviders(unittest.TestCase):

    def test_resolved_config(self):
        result = parse_config_providers({"resolved": CONFIG, "config": {}})
        self.assertEqual(result.explicit_providers, {"anthropic", "local"})
        self.assertEqual(result.auth_only_providers, {"openai"})
        self.assertEqual(len(result.explicit_models), 1)

        model = result.explicit_models[0]
        self.assertEqual(model.id, "anthropic/claude-sonnet")
        self.assertEqual(model.name, "Sonnet")
        self.assertEqual(model.context_window, 200000)
        self.assertTrue(model.reasoning)

    def test_raw_json_fallback(self):
        result = parse_config_providers({"raw": json.dumps(CONFIG)})
        self.assertEqual(result.auth_only_providers, {"openai"})

    def test_unusable_payloads(self):
        for payload in (None, [], {"raw": "{nope"}, {"config": "text"}):
            result = parse_config_providers(payload)
            self.assertEqual(result.explicit_models, [])
            self.assertEqual(result.auth_only_providers, set())


class TestMergeModels(unittest.TestCase):

    def test_catalog_adds_only_auth_only_providers(self):
        config = parse_config_providers({"config": CONFIG})
        catalog = catalog_entries({"models": [
            {"id": "gpt-4o", "provider": "openai", "name": "GPT-4o"},
            {"id": "claude-haiku", "provider": "anthropic"},
            {"id": "no-provider"},
            "junk",
        ]})
        models = merge_models(config, catalog)
        self.assertEqual([m.id for m in models], ["anthropic/claude-sonnet", "openai/gpt-4o"])
        self.assertEqual(models[1].name, "GPT-4o")

    def test_missing_catalog(self):
        config = parse_config_providers({"config": CONFIG})
        self.assertEqual(len(merge_models(config, None)), 1)

    def test_catalog_entries_shapes(self):
        self.assertEqual(catalog_entries([{"id": "a"}]), [{"id": "a"}])
        self.assertEqual(catalog_entries({"models": []}), [])
        self.assertEqual(catalog_entries("bad"), [])


if __name__ == "__main__":
    unittest.main()
