"""Hotel channel-manager integration engine"""
