from __future__ import annotations

import unittest

from utils import log_contracts


class LogContractsTests(unittest.TestCase):
    def test_open_event_adds_schema_and_reason_code(self) -> None:
        row = log_contracts.trade_open_event(
            {
                "position_id": "12",
                "token_address": "0xAAAA111111111111111111111111111111111111",
                "chain_id": "56",
                "tx_ref": "0xbuy",
                "amount_usd_invested": "10",
            },
            run_tag="mx_a",
        )
        self.assertEqual(row["stage"], log_contracts.STAGE_OPEN)
        self.assertEqual(row["schema_name"], log_contracts.SCHEMA_TRADE_EVENT)
        self.assertEqual(row["reason"], "buy")
        self.assertEqual(row["reason_code"], "EXEC_BUY")
        self.assertEqual(row["reason_category"], "execute")
        self.assertEqual(row["token_address"], "0xaaaa111111111111111111111111111111111111")
        self.assertEqual((row["position_id"], row["chain_id"]), (12, 56))
        self.assertEqual(row["amount_usd_invested"], 10.0)
        self.assertEqual(row["symbol"], "N/A")
        self.assertEqual(row["run_tag"], "mx_a")
        self.assertTrue(str(row.get("event_id", "")).startswith("evt_"))

    def test_close_event_maps_exit_reason(self) -> None:
        row = log_contracts.trade_close_event(
            {
                "position_id": 3,
                "reason": "Profit_Floor",
                "pnl": "8",
                "profit_floor": None,
                "timestamp": "2026-01-02T03:04:05Z",
            }
        )
        self.assertEqual(row["reason"], "profit_floor")
        self.assertEqual(row["reason_code"], "EXIT_PROFIT_FLOOR")
        self.assertEqual(row["reason_category"], "exit")
        self.assertEqual(row["pnl"], 8.0)
        self.assertEqual(row["profit_floor"], 0.0)
        self.assertEqual(row["timestamp"], "2026-01-02T03:04:05+00:00")
        self.assertNotIn("run_tag", row)

    def test_event_id_is_stable_per_position_and_tx(self) -> None:
        event = {"position_id": 5, "tx_ref": "0xsell", "ts": 1_700_000_000}
        first = log_contracts.trade_close_event(event)
        second = log_contracts.trade_close_event(dict(event, reason="reconciled"))
        opened = log_contracts.trade_open_event(event)

        self.assertEqual(first["event_id"], second["event_id"])
        self.assertNotEqual(first["event_id"], opened["event_id"])
        self.assertEqual(second["reason_severity"], "WARN")

    def test_unknown_reason_code_gets_generic_meta(self) -> None:
        meta = log_contracts.reason_code_meta("exit-stale quote")
        self.assertEqual(meta["category"], "unknown")
        self.assertEqual(meta["title"], "Exit Stale Quote")


if __name__ == "__main__":
    unittest.main()
