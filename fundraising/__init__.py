"""Church fundraising platform: donor portal, admin approvals and donor messaging."""
