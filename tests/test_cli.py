"""Tests for the command line interface."""

import json

import pytest

from ledger_import.llm import ProviderRegistry
from ledger_import.runner import create_cli, main
from ledger_import.state_store import StateStore

from .conftest import SAMPLE_BANK_CSV, FakeProvider

ENV_VARS = [
    "GOOGLE_AI_API_KEY",
    "OPENAI_API_KEY",
    "OLLAMA_URL",
    "LEDGER_IMPORT_OLLAMA_ENABLED",
    "LEDGER_IMPORT_PROVIDER_ORDER",
    "LEDGER_IMPORT_DB",
    "LEDGER_IMPORT_MAX_WORKERS",
]

MAPPING_REPLY = {
    "headerRowIndex": 0,
    "fieldMappings": {
        "transactionDate": {"columnIndex": 0, "columnName": "Date"},
        "description": {"columnIndex": 1, "columnName": "Description"},
        "amount": {"columnIndex": 2, "columnName": "Amount"},
    },
    "conversions": [],
    "currency": "USD",
    "confidence": 0.9,
}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        f"""
state_db_path: "{tmp_path / 'state.db'}"
batch:
  max_workers: 1
  max_retries: 0
  poll_interval_seconds: 0.01
categorization:
  include_ai: false
"""
    )
    return path


@pytest.fixture
def fake_registry(monkeypatch):
    """Replace the configured provider chain with a scripted provider."""

    def _install(handler):
        provider = FakeProvider("openai", handler=handler)
        monkeypatch.setattr(ProviderRegistry, "from_config", lambda config: ProviderRegistry([provider]))
        return provider

    return _install


class TestParser:
    """Tests for argument parsing."""

    def test_import_arguments(self):
        args = create_cli().parse_args(
            ["import", "a.jpg", "b.csv", "--user", "user-1", "--type", "receipts"]
        )

        assert args.command == "import"
        assert args.files == ["a.jpg", "b.csv"]
        assert args.user == "user-1"
        assert args.import_type == "receipts"
        assert args.source_format is None

    def test_import_defaults_to_mixed(self):
        args = create_cli().parse_args(["import", "a.jpg", "--user", "u"])

        assert args.import_type == "mixed"

    def test_unknown_import_type_rejected(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["import", "a.jpg", "--user", "u", "--type", "payslips"])

    def test_no_command(self, capsys):
        assert main([]) == 1


class TestCommands:
    """Tests for command handlers."""

    def test_init_config(self, tmp_path, capsys):
        path = tmp_path / "new.yaml"

        assert main(["-c", str(path), "init-config"]) == 0
        assert path.exists()
        assert main(["-c", str(path), "init-config"]) == 1
        assert "already exists" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path, capsys):
        path = tmp_path / "config.yaml"
        path.write_text("batch:\n  max_workers: 0\n")

        assert main(["-c", str(path), "status"]) == 1
        assert "Failed to load config" in capsys.readouterr().out

    def test_seed_categories(self, config_file, tmp_path, capsys):
        assert main(["-c", str(config_file), "seed-categories"]) == 0
        assert "Seeded 34 new system categories" in capsys.readouterr().out
        assert len(StateStore(tmp_path / "state.db").list_categories()) == 34

    def test_providers_none_configured(self, config_file, capsys):
        assert main(["-c", str(config_file), "providers"]) == 1
        assert "No LLM providers configured" in capsys.readouterr().out

    def test_providers_listed(self, config_file, monkeypatch, capsys):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

        assert main(["-c", str(config_file), "providers"]) == 0
        assert "1. openai" in capsys.readouterr().out

    def test_status_store(self, config_file, capsys):
        assert main(["-c", str(config_file), "status"]) == 0
        assert "Store Status" in capsys.readouterr().out

    def test_status_unknown_batch(self, config_file, capsys):
        assert main(["-c", str(config_file), "status", "--batch", "7"]) == 1

    def test_cancel(self, config_file, tmp_path, capsys):
        store = StateStore(tmp_path / "state.db")
        batch_id, _ = store.create_batch("user-1", "receipts", [("a.jpg", "u", "jpg")])

        assert main(["-c", str(config_file), "cancel", str(batch_id)]) == 0
        assert main(["-c", str(config_file), "cancel", str(batch_id)]) == 0
        assert main(["-c", str(config_file), "cancel", "999"]) == 1

        assert store.get_batch(batch_id).cancelled is True
        types = [entry.activity_type for entry in store.get_activity_log(batch_id)]
        assert types == ["batch_cancelled"]

    def test_import_and_status(self, config_file, tmp_path, fake_registry, receipt_json, capsys):
        fake_registry(lambda prompt, schema, image: receipt_json)
        receipt = tmp_path / "r.jpg"
        receipt.write_bytes(b"receipt")

        code = main(["-c", str(config_file), "import", str(receipt), "--user", "user-1", "--type", "receipts"])

        out = capsys.readouterr().out
        assert code == 0
        assert "✓ r.jpg" in out
        assert "completed: 1 successful, 0 failed, 0 duplicate" in out

        assert main(["-c", str(config_file), "status", "--batch", "1", "--activity"]) == 0
        out = capsys.readouterr().out
        assert "Successful:   1" in out
        assert "batch_completed" in out

    def test_import_failure_exit_code(self, config_file, tmp_path, fake_registry, receipt_json, capsys):
        receipt_json["date"] = None
        fake_registry(lambda prompt, schema, image: receipt_json)
        receipt = tmp_path / "r.jpg"
        receipt.write_bytes(b"receipt")

        code = main(["-c", str(config_file), "import", str(receipt), "--user", "user-1", "--type", "receipts"])

        assert code == 1
        assert "[extraction_validation]" in capsys.readouterr().out

    def test_process_item(self, config_file, tmp_path, fake_registry, receipt_json, capsys):
        fake_registry(lambda prompt, schema, image: receipt_json)
        receipt = tmp_path / "r.jpg"
        receipt.write_bytes(b"receipt")
        store = StateStore(tmp_path / "state.db")
        batch_id, items = store.create_batch("user-1", "receipts", [("r.jpg", receipt.as_uri(), "jpg")])
        payload_path = tmp_path / "payload.json"
        payload_path.write_text(
            json.dumps(
                {
                    "batchId": batch_id,
                    "batchItemId": items[0].id,
                    "fileUrl": receipt.as_uri(),
                    "fileName": "r.jpg",
                    "fileFormat": "jpg",
                    "userId": "user-1",
                    "importType": "receipts",
                }
            )
        )

        assert main(["-c", str(config_file), "process-item", str(payload_path)]) == 0
        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert result["batchItemId"] == items[0].id
        assert "documentId" in result

    def test_process_item_invalid_payload(self, config_file, tmp_path, capsys):
        payload_path = tmp_path / "payload.json"
        payload_path.write_text('{"batchId": 1}')

        assert main(["-c", str(config_file), "process-item", str(payload_path)]) == 1
        assert "Invalid job payload" in capsys.readouterr().out

    def test_detect_mapping(self, config_file, tmp_path, fake_registry, capsys):
        fake_registry(lambda prompt, schema, image: MAPPING_REPLY)
        statement = tmp_path / "statement.csv"
        statement.write_text(SAMPLE_BANK_CSV)

        assert main(["-c", str(config_file), "detect-mapping", str(statement), "--source-format", "bank_account"]) == 0

        mapping = json.loads(capsys.readouterr().out)
        assert mapping["headerRowIndex"] == 0
        assert mapping["fieldMappings"]["amount"]["columnIndex"] == 2
        assert mapping["conversions"][0]["reverseSign"] is False

    def test_detect_mapping_failure(self, config_file, tmp_path, fake_registry, capsys):
        fake_registry(lambda prompt, schema, image: "no")
        statement = tmp_path / "statement.csv"
        statement.write_text(SAMPLE_BANK_CSV)

        assert main(["-c", str(config_file), "detect-mapping", str(statement)]) == 1
