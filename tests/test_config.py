import pytest

from giottoflow.config import (PIPELINE_STAGES, get_parameter_defaults, validate_config, update_config,
                               read_config, write_config, create_instructions, change_instructions,
                               get_instruction)
from giottoflow.exceptions import ConfigurationError


class TestConfig:
    """Configuration files, defaults and validation"""

    def test_defaults_cover_every_stage(self):
        """Every stage has its parameter section"""
        defaults = get_parameter_defaults()
        assert defaults['pipeline']['stages'] == PIPELINE_STAGES
        for stage in PIPELINE_STAGES[1:]:
            assert stage in defaults

    def test_validate_requires_input_paths(self):
        """A configuration without input paths is rejected"""
        with pytest.raises(ConfigurationError):
            validate_config(get_parameter_defaults())

    def test_validate_rejects_unknown_stage(self):
        config = update_config(get_parameter_defaults(), {
            'data': {'expression_path': 'expr.txt', 'locations_path': 'locs.txt'},
            'pipeline': {'stages': ['ingestion', 'tumour_grading']},
        })
        with pytest.raises(ConfigurationError, match="tumour_grading"):
            validate_config(config)

    def test_update_config_is_deep_and_non_destructive(self):
        defaults = get_parameter_defaults()
        updated = update_config(defaults, {'clustering': {'resolution': 1.2}})
        assert updated['clustering']['resolution'] == 1.2
        assert updated['clustering']['n_neighbors'] == defaults['clustering']['n_neighbors']
        assert defaults['clustering']['resolution'] == 0.4

    @pytest.mark.parametrize("suffix", [".yaml", ".json"])
    def test_write_read_config(self, tmp_path, suffix):
        path = write_config(get_parameter_defaults(), tmp_path / f"config{suffix}")
        assert read_config(path) == get_parameter_defaults()

    def test_read_config_unsupported_suffix(self, tmp_path):
        path = tmp_path / "config.ini"
        path.write_text("[data]\n")
        with pytest.raises(ValueError):
            read_config(path)


class TestInstructions:
    """Instructions consulted by plotting functions"""

    def test_create_instructions(self, tmp_path):
        instructions = create_instructions(save_dir=tmp_path, save_plot=True)
        assert instructions['save_dir'] == str(tmp_path)
        assert instructions['save_plot'] is True
        assert get_instruction(instructions, 'plot_format') == 'png'

    def test_invalid_plot_format(self):
        with pytest.raises(ConfigurationError):
            create_instructions(plot_format='gif')

    def test_change_instructions(self, toy_adata):
        change_instructions(toy_adata, dpi=72, show_plot=False)
        assert get_instruction(toy_adata, 'dpi') == 72
        with pytest.raises(ConfigurationError):
            change_instructions(toy_adata, colour='red')
