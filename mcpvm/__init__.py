"""Short-lived RHEL test VMs on libvirt/KVM, UTM, or vfkit."""

__version__ = '0.1.0'
