import unittest

from support import TempDatabaseTestCase, seed_company, seed_user

from achei import crm, messages, storage


class KanbanTests(TempDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = seed_user("u1")
        self.stages = crm.ensure_default_stages(self.user)

    def test_default_stages_created_once(self) -> None:
        self.assertEqual([stage["name"] for stage in self.stages], ["Prospecção", "Contato", "Proposta", "Fechado"])
        self.assertEqual(len(crm.ensure_default_stages(self.user)), 4)

    def test_new_stage_goes_last(self) -> None:
        stage = crm.create_stage(self.user, "Negociação")
        self.assertEqual(stage["position"], 4)

    def test_move_updates_counts_and_values(self) -> None:
        first = seed_company(self.user, "Alfa")
        second = seed_company(self.user, "Beta")
        seed_company(self.user, "Gama")
        proposta = self.stages[2]

        crm.update_deal(self.user, first["id"], deal_value=1500)
        crm.update_deal(self.user, second["id"], deal_value="250.5")
        crm.move_company(self.user, first["id"], proposta["id"])
        crm.move_company(self.user, second["id"], proposta["id"], notes="Enviada proposta")

        board = crm.kanban_board(self.user)
        self.assertEqual(board["unassigned"]["count"], 1)
        column = next(col for col in board["stages"] if col["stage"]["id"] == proposta["id"])
        self.assertEqual(column["count"], 2)
        self.assertAlmostEqual(column["totalValue"], 1750.5)

        history = crm.stage_history(self.user, second["id"])
        self.assertEqual(history[0]["toStageName"], "Proposta")
        self.assertIsNone(history[0]["fromStageId"])
        self.assertEqual(history[0]["notes"], "Enviada proposta")

    def test_deleting_stage_unassigns_companies(self) -> None:
        company = seed_company(self.user, "Alfa")
        contato = self.stages[1]
        crm.move_company(self.user, company["id"], contato["id"])

        self.assertTrue(crm.delete_stage(self.user, contato["id"]))
        board = crm.kanban_board(self.user)
        self.assertEqual(board["unassigned"]["count"], 1)
        self.assertEqual(len(board["stages"]), 3)
        self.assertIsNone(storage.get_company(self.user, company["id"])["crm_stage_id"])

    def test_move_to_unknown_stage(self) -> None:
        company = seed_company(self.user, "Alfa")
        with self.assertRaises(LookupError):
            crm.move_company(self.user, company["id"], "missing")

    def test_reorder(self) -> None:
        reversed_positions = [{"id": stage["id"], "position": 3 - index} for index, stage in enumerate(self.stages)]
        crm.reorder_stages(self.user, reversed_positions)
        self.assertEqual(crm.list_stages(self.user)[0]["name"], "Fechado")

    def test_metrics(self) -> None:
        company = seed_company(self.user, "Alfa", phones=[("41999990001", "valid")], enriched_at="2026-01-01 00:00:00")
        seed_company(self.user, "Beta")
        crm.update_deal(self.user, company["id"], deal_value=100)
        crm.move_company(self.user, company["id"], self.stages[0]["id"])
        crm.create_activity(self.user, {"companyId": company["id"], "activityType": "task", "title": "Ligar"})
        crm.create_activity(
            self.user,
            {"companyId": company["id"], "activityType": "task", "title": "Feito", "isCompleted": True},
        )
        crm.create_activity(self.user, {"companyId": company["id"], "activityType": "note", "title": "Nota"})

        metrics = crm.crm_metrics(self.user)
        self.assertEqual(metrics["totalLeads"], 1)
        self.assertEqual(metrics["totalDealValue"], 100)
        self.assertEqual(metrics["pendingTasks"], 1)

        dashboard = crm.dashboard_metrics(self.user)
        self.assertEqual(dashboard["totalCompanies"], 2)
        self.assertEqual(dashboard["validPhones"], 1)
        self.assertEqual(dashboard["enrichmentRate"], 50.0)


class ActivityTests(TempDatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.user = seed_user("u1")
        self.company = seed_company(self.user, "Alfa")

    def test_invalid_type_rejected(self) -> None:
        with self.assertRaises(ValueError):
            crm.create_activity(self.user, {"companyId": self.company["id"], "activityType": "fax", "title": "x"})

    def test_completion_stamps_time(self) -> None:
        activity = crm.create_activity(
            self.user,
            {"companyId": self.company["id"], "activityType": "call", "title": "Ligar"},
        )
        self.assertIsNone(activity["completedAt"])
        self.assertTrue(crm.update_activity(self.user, activity["id"], {"isCompleted": True}))
        stored = crm.list_activities(self.user, self.company["id"])[0]
        self.assertTrue(stored["isCompleted"])
        self.assertIsNotNone(stored["completedAt"])
        self.assertEqual(stored["company"]["name"], "Alfa")

    def test_overdue_tasks(self) -> None:
        crm.create_activity(
            self.user,
            {"companyId": self.company["id"], "activityType": "task", "title": "Atrasada", "dueDate": "2026-01-01T09:00:00"},
        )
        crm.create_activity(
            self.user,
            {"companyId": self.company["id"], "activityType": "task", "title": "Futura", "dueDate": "2026-12-01T09:00:00"},
        )
        overdue = crm.overdue_tasks(self.user, now="2026-06-01T00:00:00")
        self.assertEqual([task["title"] for task in overdue], ["Atrasada"])
        self.assertEqual(overdue[0]["companyName"], "Alfa")


class TemplateTests(TempDatabaseTestCase):
    def test_render_and_send(self) -> None:
        user = seed_user("u1")
        company = seed_company(user, "Alfa", phones=[("41999990001", "valid")])
        template = messages.create_template(user, "Abertura", "Olá {empresa} de {cidade}/{estado}!")

        sent = messages.send_message(
            user,
            company["id"],
            company["company_phones"][0]["id"],
            "whatsapp",
            template_id=template["id"],
        )
        self.assertEqual(sent["messageContent"], "Olá Alfa de Curitiba/PR!")
        history = messages.message_history(user)
        self.assertEqual(history[0]["templateName"], "Abertura")
        self.assertEqual(history[0]["phoneNumber"], "41999990001")

    def test_invalid_channel(self) -> None:
        user = seed_user("u1")
        company = seed_company(user, "Alfa", phones=[("41999990001", "valid")])
        with self.assertRaises(ValueError):
            messages.send_message(user, company["id"], company["company_phones"][0]["id"], "fax", content="oi")


if __name__ == "__main__":
    unittest.main()
