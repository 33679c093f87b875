#!/usr/bin/python

import json
import os
import sys
import unittest

# simple magic for using scripts within a source tree
basedir = os.path.dirname(os.path.dirname(os.path.dirname(
    os.path.abspath(__file__))))
if os.path.isdir(os.path.join(basedir, 'domctl')):
    sys.path.append(basedir)

from domctl import domain_config
from domctl.domain_config import DiskConfig, DomainConfig, ShutdownAction

from fake_platform import make_config

LEGACY = """
name = "web"
uuid = "6d2b9b5a-0f2c-4c43-8d4c-3a1a1c0e8e11"
memory = 1024
vcpus = 2
on_crash = "coredump-restart"
disk = ['/images/web.img,xvda,w', 'vdev=hdc, target=/isos/x.iso, devtype=cdrom']
kernel = /boot/vmlinuz
"""


class DiskConfigTest(unittest.TestCase):

    def test_positional(self):
        disk = DiskConfig.from_spec("/images/a.img,xvda,w")
        self.assertEqual(disk.vdev, "xvda")
        self.assertEqual(disk.target, "/images/a.img")
        self.assertFalse(disk.removable)
        self.assertEqual(disk.extra, {"access": "w"})

    def test_cdrom_suffix(self):
        disk = DiskConfig.from_spec("/isos/x.iso,hdc:cdrom,r")
        self.assertEqual(disk.vdev, "hdc")
        self.assertTrue(disk.removable)

    def test_keyed(self):
        disk = DiskConfig.from_spec("vdev=hdc, target=/isos/x.iso, "
                                    "devtype=cdrom")
        self.assertTrue(disk.removable)
        self.assertEqual(disk.to_dict()["target"], "/isos/x.iso")

    def test_no_vdev(self):
        self.assertRaises(ValueError, DiskConfig.from_spec, "/images/a.img")


class DomainConfigTest(unittest.TestCase):

    def test_defaults(self):
        config = DomainConfig("vm")
        self.assertEqual(config.on_poweroff, ShutdownAction.DESTROY)
        self.assertEqual(config.on_reboot, ShutdownAction.RESTART)
        self.assertEqual(config.on_watchdog, ShutdownAction.DESTROY)
        self.assertEqual(config.on_crash, ShutdownAction.DESTROY)
        self.assertEqual(config.on_soft_reset, ShutdownAction.SOFT_RESET)

    def test_legacy(self):
        config = DomainConfig.from_legacy(LEGACY, "web.cfg")
        self.assertEqual(config.name, "web")
        self.assertEqual(config.uuid, "6d2b9b5a-0f2c-4c43-8d4c-3a1a1c0e8e11")
        self.assertEqual(config.on_crash, ShutdownAction.COREDUMP_RESTART)
        self.assertEqual([disk.vdev for disk in config.disks],
                         ["xvda", "hdc"])
        self.assertEqual([disk.removable for disk in config.disks],
                         [False, True])
        self.assertEqual(config.build_info, {"memory": 1024, "vcpus": 2,
                                             "kernel": "/boot/vmlinuz"})

    def test_extra_config_overrides(self):
        config = DomainConfig.from_legacy(LEGACY, "web.cfg",
                                          'memory = 2048\nname = "web2"')
        self.assertEqual(config.name, "web2")
        self.assertEqual(config.build_info["memory"], 2048)

    def test_legacy_errors(self):
        self.assertRaises(domain_config.DomainConfigError,
                          DomainConfig.from_legacy, 'on_reboot = "reboot"')
        self.assertRaises(domain_config.DomainConfigError,
                          DomainConfig.from_legacy, "not a config line")
        self.assertRaises(domain_config.DomainConfigError,
                          DomainConfig.from_legacy, 'disk = ["/a.img"]')

    def test_json(self):
        config = make_config("vm1", on_reboot="rename-restart")
        data = config.to_stream_data()
        self.assertTrue(data.endswith(b"\0"))
        raw = json.loads(data[:-1].decode("utf-8"))
        self.assertEqual(raw["c_info"]["name"], "vm1")
        self.assertEqual(raw["actions"]["on_reboot"], "rename-restart")

        parsed = DomainConfig.from_json(data)
        self.assertEqual(parsed.name, "vm1")
        self.assertEqual(parsed.uuid, config.uuid)
        self.assertEqual(parsed.on_reboot, ShutdownAction.RESTART_RENAME)
        self.assertEqual(parsed.build_info, config.build_info)
        self.assertEqual([disk.to_dict() for disk in parsed.disks],
                         [disk.to_dict() for disk in config.disks])

    def test_json_errors(self):
        self.assertRaises(domain_config.DomainConfigError,
                          DomainConfig.from_json, b"{not json")
        self.assertRaises(domain_config.DomainConfigError,
                          DomainConfig.from_json,
                          '{"actions": {"on_halt": "destroy"}}')
        self.assertRaises(domain_config.DomainConfigError,
                          DomainConfig.from_json,
                          '{"actions": {"on_reboot": "explode"}}')

    def test_renamed(self):
        config = make_config("vm1")
        other = config.renamed("vm1--incoming")
        self.assertEqual(other.name, "vm1--incoming")
        self.assertEqual(config.name, "vm1")
        other.build_info["memory"] = 1
        self.assertEqual(config.build_info["memory"], 512)

    def test_parse(self):
        config = make_config("vm1")
        self.assertEqual(
            domain_config.parse(config.to_stream_data(), True, "s").name,
            "vm1")
        self.assertEqual(
            domain_config.parse(b'name = "legacy"\0', False, "s").name,
            "legacy")

    def test_action_names(self):
        self.assertEqual(ShutdownAction.from_name("coredump-destroy"),
                         ShutdownAction.COREDUMP_DESTROY)
        with self.assertRaises(ValueError) as cm:
            ShutdownAction.from_name("reboot")
        self.assertIn("reboot", str(cm.exception))


if __name__ == '__main__':
    unittest.main()
