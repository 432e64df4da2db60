"""Tests for webhook payload parsing and choice normalization."""

from app.schemas.webhook import MultiChoice, SingleChoice, TypeformWebhook, WebhookAnswer


def _answer(**kwargs) -> WebhookAnswer:
    return WebhookAnswer.model_validate(
        {"field": {"id": "f1", "type": "multiple_choice"}, **kwargs}
    )


class TestSelectionNormalization:
    """Every choice wire shape becomes one tagged selection."""

    def test_single_choice_object(self) -> None:
        answer = _answer(type="choice", choice={"id": "c1", "label": "Yes", "ref": "r1"})

        assert isinstance(answer.selection, SingleChoice)
        assert answer.selection.item.id == "c1"
        assert answer.selection.item.label == "Yes"

    def test_single_choice_other_uses_other_text(self) -> None:
        answer = _answer(type="choice", choice={"other": "Something else"})

        assert isinstance(answer.selection, SingleChoice)
        assert answer.selection.item.label == "Something else"
        assert answer.selection.item.id is None

    def test_choices_ids_labels_object(self) -> None:
        answer = _answer(
            type="choices",
            choices={"ids": ["a", "b"], "labels": ["A", "B"], "refs": ["ra", "rb"]},
        )

        assert isinstance(answer.selection, MultiChoice)
        assert [(i.id, i.label, i.ref) for i in answer.selection.items] == [
            ("a", "A", "ra"),
            ("b", "B", "rb"),
        ]

    def test_choices_object_with_other(self) -> None:
        answer = _answer(type="choices", choices={"ids": ["a"], "labels": ["A"], "other": "Z"})

        assert isinstance(answer.selection, MultiChoice)
        assert [i.label for i in answer.selection.items] == ["A", "Z"]
        assert answer.selection.items[1].id is None

    def test_choices_list_shape(self) -> None:
        answer = _answer(type="choices", choices=[{"id": "a", "label": "A"}, "b"])

        assert isinstance(answer.selection, MultiChoice)
        assert [i.id for i in answer.selection.items] == ["a", "b"]

    def test_non_choice_answer_has_no_selection(self) -> None:
        answer = _answer(type="text", text="hello")

        assert answer.selection is None

    def test_wire_payload_excludes_selection(self) -> None:
        answer = _answer(type="choice", choice={"id": "c1", "label": "Yes"})

        payload = answer.wire_payload()

        assert "selection" not in payload
        assert payload["choice"] == {"id": "c1", "label": "Yes"}


class TestWebhookEnvelope:
    """Envelope parsing."""

    def test_parses_definition_fields(self) -> None:
        webhook = TypeformWebhook.model_validate(
            {
                "event_type": "form_response",
                "form_response": {
                    "form_id": "F1",
                    "token": "t1",
                    "definition": {
                        "fields": [
                            {
                                "id": "f1",
                                "type": "multiple_choice",
                                "properties": {"allow_multiple_selections": True},
                            }
                        ]
                    },
                    "answers": [],
                },
            }
        )

        definitions = webhook.form_response.field_definitions()

        assert definitions["f1"].allows_multiple is True

    def test_missing_form_response_is_allowed_at_parse_time(self) -> None:
        """Required-field checks happen in the intake controller."""
        webhook = TypeformWebhook.model_validate({"event_type": "form_response"})

        assert webhook.form_response is None
