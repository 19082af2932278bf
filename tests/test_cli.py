"""
Tests for the pack/unpack orchestration and the command line entry point.
"""

import os
import stat

import numpy as np
import pytest
from PIL import Image

import channel_packer
from backend.io_backend import CPContext, load_pixel_source
from backend.texture_classes import Channel, ChannelSlot, FallbackPolicy, PackRequest, UnpackRequest
from channel_packer import main, run_pack, run_unpack


def read_pixels(path):
    with Image.open(path) as image:
        return image.mode, np.asarray(image).copy()


@pytest.fixture
def no_preferences(monkeypatch):
    """Keeps the CLI away from the user's preferences file."""
    monkeypatch.setattr(channel_packer, "load_last_save_path", lambda context: "")
    monkeypatch.setattr(channel_packer, "store_last_save_path", lambda path: None)


class TestRunPack:

    def test_saves_packed_texture(self, tmp_path, write_image):
        source = load_pixel_source(write_image("metal.png", np.full((4, 4), 128)))
        request = PackRequest(red=ChannelSlot(source),
                              blue=ChannelSlot(fallback=FallbackPolicy.GRAY),
                              alpha=ChannelSlot(fallback=FallbackPolicy.WHITE))
        context = CPContext()

        saved_path = run_pack(request, str(tmp_path / "Mask.png"), context=context)

        mode, pixels = read_pixels(saved_path)
        assert mode == "RGBA"
        assert np.all(pixels == [128, 0, 128, 255])
        assert context.last_save_path == str(tmp_path)

    def test_retries_after_fixing_readability(self, tmp_path, write_image, owner_read_permission):
        path = write_image("ao.png", np.full((2, 2), 255))
        os.chmod(path, stat.S_IWUSR)
        request = PackRequest(green=ChannelSlot(load_pixel_source(path)))

        saved_path = run_pack(request, str(tmp_path / "out.png"), fix_readable=True)

        assert saved_path
        assert read_pixels(saved_path)[1][0, 0].tolist() == [0, 255, 0, 0]

    def test_asks_before_fixing(self, tmp_path, write_image, owner_read_permission):
        path = write_image("ao.png", np.full((2, 2), 255))
        os.chmod(path, stat.S_IWUSR)
        prompts = []

        def decline(prompt):
            prompts.append(prompt)
            return False

        request = PackRequest(green=ChannelSlot(load_pixel_source(path)))
        saved_path = run_pack(request, str(tmp_path / "out.png"), fix_readable=False, confirm=decline)

        assert saved_path is None
        assert "- Green" in prompts[0]
        assert not os.path.exists(tmp_path / "out.png")

    def test_dimension_mismatch_aborts(self, tmp_path, write_image, capsys):
        request = PackRequest(red=ChannelSlot(load_pixel_source(write_image("a.png", np.zeros((2, 2))))),
                              green=ChannelSlot(load_pixel_source(write_image("b.png", np.zeros((4, 4))))))

        assert run_pack(request, str(tmp_path / "out.png")) is None
        assert "Green texture is 4x4, expected 2x2." in capsys.readouterr().out
        assert not os.path.exists(tmp_path / "out.png")

    def test_nothing_assigned(self, tmp_path, capsys):
        assert run_pack(PackRequest(), str(tmp_path / "out.png")) is None
        assert "Please assign at least one texture." in capsys.readouterr().out


class TestRunUnpack:

    def test_saves_one_file_per_channel(self, tmp_path, write_image):
        data = np.zeros((2, 3, 4))
        data[..., 0] = 255
        data[..., 3] = 51
        source = load_pixel_source(write_image("T_Mask.png", data))

        saved_paths = run_unpack(UnpackRequest(source, frozenset({Channel.R, Channel.A})), str(tmp_path / "split"))

        assert [os.path.basename(path) for path in saved_paths] == ["T_Mask_R.png", "T_Mask_A.png"]
        assert read_pixels(saved_paths[0])[1][0, 0].tolist() == [255, 255, 255, 255]
        assert read_pixels(saved_paths[1])[1][1, 2].tolist() == [51, 51, 51, 255]

    def test_no_channels(self, tmp_path, write_image, capsys):
        source = load_pixel_source(write_image("T_Mask.png", np.zeros((2, 2))))

        assert run_unpack(UnpackRequest(source, frozenset()), str(tmp_path)) == []
        assert "select at least one channel" in capsys.readouterr().out


class TestMain:

    def test_pack_command(self, tmp_path, write_image, no_preferences):
        red = write_image("rough.png", np.full((2, 2), 51))
        output = tmp_path / "ORM.png"

        exit_code = main(["pack", "-r", red, "--invert", "r", "--fallback-a", "white", "-o", str(output)])

        assert exit_code == 0
        assert read_pixels(output)[1][0, 0].tolist() == [204, 0, 0, 255]

    def test_pack_into_folder(self, tmp_path, write_image, no_preferences, monkeypatch):
        monkeypatch.setattr(channel_packer, "PACKED_FILENAME", "PackedTexture")
        alpha = write_image("opacity.png", np.full((2, 2), 255))

        assert main(["pack", "--alpha", alpha, "-o", str(tmp_path / "maps")]) == 0
        assert os.path.isfile(tmp_path / "maps" / "PackedTexture.png")

    def test_unpack_command(self, tmp_path, write_image, no_preferences):
        source = write_image("T_ORM.png", np.full((2, 2, 3), 128))

        assert main(["unpack", source, "--channels", "GB", "-o", str(tmp_path / "out")]) == 0
        assert sorted(os.listdir(tmp_path / "out")) == ["T_ORM_B.png", "T_ORM_G.png"]

    def test_unknown_channel(self, write_image, no_preferences, capsys):
        source = write_image("T_ORM.png", np.zeros((2, 2)))

        assert main(["unpack", source, "--channels", "X"]) == 1
        assert "Aborted" in capsys.readouterr().out

    def test_missing_source(self, tmp_path, no_preferences, capsys):
        assert main(["pack", "-r", str(tmp_path / "missing.png"), "-o", str(tmp_path / "out.png")]) == 1
        assert "not an imported asset" in capsys.readouterr().out

    def test_invalid_file_type(self, write_image, no_preferences):
        with pytest.raises(SystemExit):
            main(["pack", "-r", write_image("a.png", np.zeros((2, 2))), "--file-type", "jpg"])

    def test_unpack_save_failure_keeps_no_partial_output(self, tmp_path, write_image, no_preferences, monkeypatch, capsys):
        stored = []
        monkeypatch.setattr(channel_packer, "store_last_save_path", stored.append)
        source = write_image("T_ORM.png", np.full((2, 2, 3), 128))
        output = tmp_path / "out"
        (output / "T_ORM_B.png").mkdir(parents=True)
        # A folder in place of the blue channel file makes the second save fail.

        assert main(["unpack", source, "--channels", "GB", "-o", str(output)]) == 1
        assert os.listdir(output) == ["T_ORM_B.png"]
        assert (output / "T_ORM_B.png").is_dir()
        assert "Unpack failed" in capsys.readouterr().out
        assert stored == []

    @pytest.mark.parametrize("filename", ["ORM.webp", "ORM.jpg"])
    def test_pack_rejects_lossy_output_extension(self, tmp_path, write_image, no_preferences, capsys, filename):
        red = write_image("rough.png", np.full((2, 2), 51))

        with pytest.raises(SystemExit):
            main(["pack", "-r", red, "--file-type", "png", "-o", str(tmp_path / filename)])
        assert not os.path.exists(tmp_path / filename)
        assert "Invalid output extension" in capsys.readouterr().out

    def test_output_extension_checked_before_loading(self, tmp_path, no_preferences, capsys):
        with pytest.raises(SystemExit):
            main(["pack", "-r", str(tmp_path / "missing.png"), "-o", str(tmp_path / "ORM.jpg")])
        assert "not an imported asset" not in capsys.readouterr().out

    def test_pack_tga_output(self, tmp_path, write_image, no_preferences):
        red = write_image("rough.png", np.full((2, 2), 51))

        assert main(["pack", "-r", red, "--fallback-a", "white", "-o", str(tmp_path / "ORM.TGA")]) == 0
        assert read_pixels(tmp_path / "ORM.TGA")[1][0, 0].tolist() == [51, 0, 0, 255]

    def test_invert_accepts_spaced_channel_list(self, tmp_path, write_image, no_preferences):
        red = write_image("rough.png", np.full((2, 2), 51))
        green = write_image("ao.png", np.full((2, 2), 255))
        output = tmp_path / "ORM.png"

        assert main(["pack", "-r", red, "-g", green, "--invert", "r, g", "-o", str(output)]) == 0
        assert read_pixels(output)[1][0, 0].tolist()[:2] == [204, 0]
