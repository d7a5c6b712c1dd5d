"""Tests for the classification registry."""

import pytest

from infragraph.core.registry import ClassificationRegistry, classify, default_registry
from infragraph.core.schema import IdentityClass, Provider


@pytest.fixture
def registry():
    return ClassificationRegistry.default()


class TestClassify:
    """Tests for provider and identity classification."""

    @pytest.mark.parametrize(
        "resource_type,provider,identity_class",
        [
            ("google_compute_instance", Provider.GCP, IdentityClass.REGULAR_RESOURCE),
            ("google_service_account", Provider.GCP, IdentityClass.IDENTITY_RESOURCE),
            ("aws_iam_role", Provider.AWS, IdentityClass.IDENTITY_RESOURCE),
            ("aws_s3_bucket", Provider.AWS, IdentityClass.REGULAR_RESOURCE),
            ("azurerm_service_principal", Provider.AZURE, IdentityClass.IDENTITY_RESOURCE),
            ("azurerm_user_assigned_identity", Provider.AZURE, IdentityClass.IDENTITY_RESOURCE),
            ("azuread_service_principal", Provider.AZURE, IdentityClass.IDENTITY_RESOURCE),
            ("unknown_widget", Provider.UNKNOWN, IdentityClass.REGULAR_RESOURCE),
        ],
    )
    def test_known_types(self, registry, resource_type, provider, identity_class):
        """Test the documented classification examples."""
        result = registry.classify(resource_type)
        assert result.provider == provider
        assert result.identity_class == identity_class

    def test_matching_is_case_insensitive(self, registry):
        """Test that prefixes and tokens ignore case."""
        result = registry.classify("Google_Service_Account")
        assert result.provider == Provider.GCP
        assert result.is_identity

    def test_total_on_odd_input(self, registry):
        """Test that empty or odd types still classify."""
        assert registry.classify("").provider == Provider.UNKNOWN
        assert registry.classify("_").identity_class == IdentityClass.REGULAR_RESOURCE

    def test_module_level_classify(self):
        """Test the module-level helper uses the defaults."""
        assert classify("aws_iam_user").is_identity
        assert default_registry() is default_registry()

    def test_permission_bindings(self, registry):
        """Test binding detection."""
        assert registry.is_permission_binding("google_project_iam_member")
        assert registry.is_permission_binding("azurerm_role_assignment")
        assert registry.is_permission_binding("aws_iam_role_policy_attachment")
        assert not registry.is_permission_binding("google_compute_instance")


class TestRegistryLoading:
    """Tests for loading registry additions."""

    def test_additions_extend_defaults(self):
        """Test that additions are merged onto the defaults."""
        registry = ClassificationRegistry.from_dict(
            {
                "providers": [{"prefix": "oci_", "provider": "UNKNOWN"}],
                "identity_tokens": ["identity_domain"],
                "network_fields": ["vcn_id"],
            }
        )
        assert registry.classify("oci_identity_domain").is_identity
        assert registry.classify("google_service_account").is_identity
        assert "vcn_id" in registry.network_fields
        assert "vpc_id" in registry.network_fields

    def test_provider_additions_take_precedence(self):
        """Test that added prefixes are matched before the built-in ones."""
        registry = ClassificationRegistry.from_dict(
            {"providers": [{"prefix": "google_workspace_", "provider": "UNKNOWN"}]}
        )
        assert registry.provider_for("google_workspace_user") == Provider.UNKNOWN
        assert registry.provider_for("google_compute_instance") == Provider.GCP

    def test_replace_instead_of_extend(self):
        """Test extend=False uses only the given data."""
        registry = ClassificationRegistry.from_dict(
            {"providers": [{"prefix": "aws_", "provider": "AWS"}]}, extend=False
        )
        assert registry.provider_for("google_compute_instance") == Provider.UNKNOWN
        assert not registry.classify("aws_iam_role").is_identity

    def test_load_yaml(self, tmp_path):
        """Test loading additions from the classification section of a YAML file."""
        path = tmp_path / "settings.yml"
        path.write_text(
            "classification:\n"
            "  identity_tokens:\n"
            "    - workload_identity\n"
            "  identity_identifiers:\n"
            "    GCP: [unique_id]\n"
        )
        registry = ClassificationRegistry.load(path)
        assert registry.classify("google_workload_identity_pool").is_identity
        assert registry.identity_identifiers(Provider.GCP) == ["unique_id", "email"]

    def test_round_trip_to_dict(self, registry):
        """Test that to_dict feeds back into from_dict unchanged."""
        again = ClassificationRegistry.from_dict(registry.to_dict(), extend=False)
        assert again.to_dict() == registry.to_dict()
