"""Tests des listes configurables propres au service de revue."""

import pytest

from app.core.config import Settings


class TestAllowedClients:
    """KEYCLOAK_ALLOWED_CLIENTS: clients dont les jetons sont acceptés."""

    def test_comma_separated(self):
        result = Settings.assemble_allowed_clients(
            "apps-healthcard-mobile, apps-healthcard-webadmin"
        )
        assert result == ["apps-healthcard-mobile", "apps-healthcard-webadmin"]

    def test_json_list(self):
        result = Settings.assemble_allowed_clients('["apps-healthcard-webadmin"]')
        assert result == ["apps-healthcard-webadmin"]

    def test_invalid_value_names_the_setting(self):
        with pytest.raises(ValueError, match="KEYCLOAK_ALLOWED_CLIENTS"):
            Settings.assemble_allowed_clients(42)  # type: ignore


class TestReviewerRoles:
    """REVIEWER_ROLES: rôles autorisés à enregistrer verdicts et décisions."""

    def test_json_list(self):
        assert Settings.assemble_reviewer_roles('["admin", "inspector"]') == ["admin", "inspector"]

    def test_single_role(self):
        assert Settings.assemble_reviewer_roles("inspector") == ["inspector"]

    def test_empty_values_are_dropped(self):
        assert Settings.assemble_reviewer_roles("admin,,  ,inspector") == ["admin", "inspector"]

    def test_python_list_is_kept(self):
        roles = ["admin", "inspector", "medical-officer"]
        assert Settings.assemble_reviewer_roles(roles) == roles
