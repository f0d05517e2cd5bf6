import pytest
from pydantic import ValidationError

from extbmiz.config import ExtBMIZConfig, LongWideConfig


class TestLongWideConfig:
    """Test LongWideConfig validation."""

    def test_tc001_defaults(self):
        config = LongWideConfig()
        assert config.status_col == "gcr_result"
        assert config.inclusion_types == ["Include"]
        assert config.sex_codes == {0: 1, 1: 2}
        assert not config.include_all
        assert set(config.column_map()) == {
            "id",
            "subjid",
            "sex",
            "agedays",
            "param",
            "measurement",
            "status",
        }

    @pytest.mark.parametrize("name", ["", "   "])
    def test_tc002_empty_column_name(self, name):
        with pytest.raises(ValidationError, match="non-empty string"):
            LongWideConfig(subjid_col=name)

    def test_tc003_duplicate_column_names(self):
        with pytest.raises(ValidationError, match="unique column names"):
            LongWideConfig(id_col="subjid")

    def test_tc004_same_param_labels(self):
        with pytest.raises(ValidationError, match="must differ"):
            LongWideConfig(height_param="X", weight_param="X")

    def test_tc005_empty_inclusion_types(self):
        with pytest.raises(ValidationError, match="at least one"):
            LongWideConfig(inclusion_types=[])

    def test_tc006_sex_codes_must_be_canonical(self):
        with pytest.raises(ValidationError, match="canonical codes"):
            LongWideConfig(sex_codes={0: 1, 1: 1})
        assert LongWideConfig(sex_codes={1: 1, 2: 2}).sex_codes == {1: 1, 2: 2}

    def test_tc007_frozen(self):
        config = LongWideConfig()
        with pytest.raises(ValidationError):
            config.include_all = True

    def test_tc008_validation_error_is_value_error(self):
        with pytest.raises(ValueError):
            LongWideConfig(param_col="")


class TestExtBMIZConfig:
    """Test ExtBMIZConfig validation."""

    def test_tc009_defaults(self):
        config = ExtBMIZConfig()
        assert config.adjust_integer_age
        assert config.column_map() == {
            "subjid": "subjid",
            "agedays": "agedays",
            "agem": "agem",
            "sex": "sex",
            "wt": "wt",
            "ht": "ht",
            "bmi": "bmi",
            "wt_id": "wt_id",
            "ht_id": "ht_id",
        }

    def test_tc010_duplicate_column_names(self):
        with pytest.raises(ValidationError, match="unique column names"):
            ExtBMIZConfig(wt_col="ht")

    def test_tc011_custom_names(self):
        config = ExtBMIZConfig(sex_col="gender", bmi_col="BMI")
        assert config.column_map()["sex"] == "gender"
        assert config.column_map()["bmi"] == "BMI"
