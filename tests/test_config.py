"""
Test Suite: Merge Configuration

YAML loading, validation and the derived per-level alignment settings.
"""

import pytest
import yaml

from burst_config import LevelConfig, MergeConfig, derive_max_motion_norm, load_config
from burst_errors import ConfigError


class TestMergeConfig:
    def test_defaults(self):
        cfg = MergeConfig()
        assert cfg.tile_size == 32
        assert cfg.tile_step == 16
        assert cfg.search_dist == 2
        assert cfg.pyramid_levels == 4
        assert cfg.merge_mode == "frequency"
        assert cfg.rows_per_chunk == 4

    def test_level_configs(self):
        levels = MergeConfig().level_configs()
        assert levels == [
            LevelConfig(32, 16, 2, False),
            LevelConfig(32, 16, 2, True),
            LevelConfig(16, 8, 2, True),
            LevelConfig(8, 4, 4, True),
        ]

    def test_level_configs_without_l2(self):
        levels = MergeConfig(use_l2_at_coarse_levels=False, pyramid_levels=2).level_configs()
        assert [lc.use_l2 for lc in levels] == [False, False]
        assert levels[1].search_dist == 4

    def test_derived_max_motion_norm(self):
        assert derive_max_motion_norm(1.0) == 1.0
        assert derive_max_motion_norm(26.5) == pytest.approx(1.3 ** 11)
        assert MergeConfig(max_motion_norm=3.0).effective_max_motion_norm() == 3.0

    @pytest.mark.parametrize("changes", [
        {"tile_size": 24},
        {"tile_step": 0},
        {"merge_mode": "median"},
        {"robustness": 0.0},
        {"read_noise": 0.0},
        {"merge_tile_size": 7},
        {"high_freq_boost": 0.5},
        {"rows_per_chunk": 0},
        {"max_frames": 51},
        {"device": "tpu"},
        {"shadow_boost": 1.5},
        {"local_contrast": -0.1},
        {"highlight_compress": 2.0},
    ])
    def test_invalid_values(self, changes):
        with pytest.raises(ConfigError):
            MergeConfig(**changes)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigError, match="tile_sise"):
            MergeConfig.from_dict({"tile_sise": 16})

    def test_round_trip_dict(self):
        cfg = MergeConfig(merge_mode="spatial", noise_sd=0.01)
        assert MergeConfig.from_dict(cfg.to_dict()) == cfg

    def test_tonemap_enabled(self):
        assert MergeConfig().tonemap_enabled
        off = MergeConfig(shadow_boost=0.0, local_contrast=0.0, highlight_compress=0.0)
        assert not off.tonemap_enabled
        assert MergeConfig(shadow_boost=0.0, local_contrast=0.0, highlight_compress=0.1).tonemap_enabled


class TestLoadConfig:
    def test_load_flat(self, tmp_path):
        path = tmp_path / "merge.yaml"
        with open(path, 'w') as f:
            yaml.dump({"merge_mode": "spatial", "robustness": 2.5, "enable_guided_filter": True}, f)
        cfg = load_config(path)
        assert cfg.merge_mode == "spatial"
        assert cfg.robustness == 2.5
        assert cfg.enable_guided_filter

    def test_load_nested_section(self, tmp_path):
        path = tmp_path / "app.yaml"
        path.write_text("burst_merge:\n  tile_size: 16\n  tile_step: 8\n")
        cfg = load_config(path)
        assert (cfg.tile_size, cfg.tile_step) == (16, 8)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(path) == MergeConfig()

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("tile_size: [16\n")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "bad_value.yaml"
        path.write_text("merge_mode: average\n")
        with pytest.raises(ConfigError):
            load_config(path)
