"""HTTP surface for the cost metering engine"""
