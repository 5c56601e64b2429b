import asyncio
import json
import unittest
from datetime import date
from pathlib import Path
from tempfile import TemporaryDirectory

from alcortex.contract import validate
from alcortex.errors import MalformedJson
from alcortex.intake import IntakeStateMachine, Step
from alcortex.kvstore import FileKeyValueStore
from alcortex.providers import DiagnosticProvider
from alcortex.records import LocalRecordVault, RecordStore
from alcortex.utils import derive_age


REPLY = {
    "mainDiagnosis": "Iron deficiency anaemia",
    "differentials": [{"diagnosis": "Thalassaemia trait", "icd10": "D56.3", "confidence": 0.15}],
    "severity": "Mild",
    "confidenceScore": 0.71,
    "interpretation": "Low haemoglobin with microcytosis.",
    "safetyWarning": "Refer if bleeding is suspected.",
    "followUp": "Ferritin and repeat CBC in 4 weeks.",
    "medicationRecs": "Ferrous sulfate 200 mg daily.",
}


class FixedProvider(DiagnosticProvider):
    name = "fixed"

    async def generate(self, request, *, cancel=None):
        return json.dumps(REPLY)


class AlcortexSmokeTests(unittest.TestCase):
    def test_age_derivation(self):
        self.assertEqual(derive_age("2000-03-15", date(2024, 3, 14)), 23)
        self.assertEqual(derive_age("2000-03-15", date(2024, 3, 15)), 24)
        self.assertIsNone(derive_age("", date(2024, 3, 15)))

    def test_contract_rejects_prose(self):
        with self.assertRaises(MalformedJson):
            validate("The patient probably has anaemia.")

    def test_end_to_end_round_trip_on_disk(self):
        with TemporaryDirectory() as tmp:
            kv = FileKeyValueStore(Path(tmp))
            store = RecordStore(LocalRecordVault(kv))
            store.init()
            machine = IntakeStateMachine(FixedProvider(), store, kv, debounce_sec=0.01)
            machine.start()
            machine.update(name="Siti", complaints="Fatigue and dizziness")
            machine.update_lab_row("blood", 0, "value", "9.8")
            machine.next()
            machine.next()

            record = asyncio.run(machine.submit("English"))

            self.assertIs(machine.step, Step.RESULT)
            reopened = LocalRecordVault(FileKeyValueStore(Path(tmp)))
            reopened.init()
            stored = reopened.get(record.id)
            self.assertIsNotNone(stored)
            self.assertEqual(stored.patient.lab_blood[0].value, "9.8")
            self.assertEqual(stored.analysis.severity, "Mild")


if __name__ == "__main__":
    unittest.main()
