"""
Progress template catalogue tests.

Covers:
    - default seeding is idempotent
    - publishing creates a new version; components keep theirs
    - weight / structure validation before anything is written
"""

import pytest

from pipetrack.core.exceptions import NotFoundError, TemplateValidationError, ValidationError
from pipetrack.models.component import Component
from pipetrack.models.progress_template import DEFAULT_TEMPLATES, ProgressTemplate
from pipetrack.services import template_service
from pipetrack.services.progress_ledger_service import update_milestone
from pipetrack.services.takeoff_import_service import validate_and_commit

_TWO_STEP = [
    {"name": "Set", "weight": 70, "order": 1},
    {"name": "Test", "weight": 30, "order": 2},
]


class TestSeeding:
    def test_defaults_present_once(self):
        assert ProgressTemplate.query.count() == len(DEFAULT_TEMPLATES)
        assert template_service.seed_default_templates() == 0
        assert ProgressTemplate.query.count() == len(DEFAULT_TEMPLATES)

    def test_missing_type(self):
        ProgressTemplate.query.filter_by(component_type="hose").delete()
        with pytest.raises(NotFoundError):
            template_service.get_active_template("hose")


class TestVersioning:
    def test_publish_bumps_version(self):
        published = template_service.create_template_version("valve", "discrete", _TWO_STEP, actor_id="eng")
        assert published["version"] == 2
        assert [m["name"] for m in published["milestones"]] == ["Set", "Test"]
        assert template_service.get_active_template("valve").id == published["id"]
        versions = [t["version"] for t in template_service.list_templates("valve")]
        assert versions == [1, 2]

    def test_existing_components_keep_their_version(self, project, rows):
        validate_and_commit(project.id, rows({"DRAWING": "P-1", "TYPE": "Valve", "QTY": 1, "CMDTY CODE": "V"}))
        old = Component.query.one()
        template_service.create_template_version("valve", "discrete", _TWO_STEP)

        result, _, _ = update_milestone(old.id, "Install", "complete", "u1")
        assert result["percent_complete"] == 60.0

        validate_and_commit(project.id, rows({"DRAWING": "P-1", "TYPE": "Valve", "QTY": 1, "CMDTY CODE": "V2"}))
        new = Component.query.filter(Component.id != old.id).one()
        assert new.template.version == 2
        result, _, _ = update_milestone(new.id, "Set", "complete", "u1")
        assert result["percent_complete"] == 70.0

    def test_weights_not_summing_to_100(self):
        with pytest.raises(TemplateValidationError):
            template_service.create_template_version("valve", "discrete", [
                {"name": "Set", "weight": 70, "order": 1},
                {"name": "Test", "weight": 20, "order": 2},
            ])
        assert template_service.get_active_template("valve").version == 1

    @pytest.mark.parametrize("component_type,workflow_type", [
        ("pump", "discrete"),
        ("valve", "batch"),
    ])
    def test_unknown_type_or_workflow(self, component_type, workflow_type):
        with pytest.raises(ValidationError):
            template_service.create_template_version(component_type, workflow_type, _TWO_STEP)
